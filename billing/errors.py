from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message or self.code.replace("_", " ").title()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class WebhookSignatureError(BillingError):  status_code = 400; code = "bad_signature"
class MalformedPayload(BillingError):       status_code = 400; code = "malformed_payload"
class ProvisioningError(BillingError):      status_code = 500; code = "provisioning_failed"
