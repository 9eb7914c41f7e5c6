from datetime import datetime, timezone

from extensions import db
from billing.models import AuthorizedUser, PendingEntitlement, SubscriptionSnapshot
from credits.models import CreditEvent, LedgerEntry

from conftest import (
    PERIOD_END, PRICE_COMMUNITY, PRICE_PRO, PRICE_PROPLUS, PRICE_UNMAPPED, get_state, naive, subscription,
)

PERIOD_END_DT = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


def test_activation_grants_once(deliver, make_user):
    user = make_user("alice@example.com", customer_id="cus_1")

    assert deliver("customer.subscription.created", subscription()).status_code == 200
    assert deliver("customer.subscription.updated", subscription()).status_code == 200

    ent, wallet = get_state(user.id)
    assert ent.plan == "pro"
    assert ent.status == "active"
    assert wallet.credits_balance == 10
    assert wallet.monthly_allowance == 10
    assert CreditEvent.query.filter_by(user_id=user.id, event_type="activation").count() == 1


def test_activation_marker_blocks_replay_even_after_state_drift(deliver, make_user, seed_state):
    user = make_user("drift@example.com", customer_id="cus_1")
    deliver("customer.subscription.created", subscription())

    # entitlement knocked back to free out of band; the same subscription replays
    seed_state(user.id, plan="free", status="inactive", balance=10, allowance=0)
    deliver("customer.subscription.updated", subscription())

    ent, wallet = get_state(user.id)
    assert ent.plan == "pro"
    assert wallet.credits_balance == 10
    assert wallet.monthly_allowance == 10


def test_activation_adds_to_purchased_credits(deliver, make_user, seed_state):
    user = make_user("packs@example.com", customer_id="cus_1")
    seed_state(user.id, plan="free", status="inactive", sub_id=None, balance=30)

    deliver("customer.subscription.created", subscription(price=PRICE_PROPLUS))

    _, wallet = get_state(user.id)
    assert wallet.credits_balance == 130


def test_tier_downgrade_clamps_immediately(deliver, make_user, seed_state):
    user = make_user("bob@example.com", customer_id="cus_1")
    seed_state(user.id, plan="proplus", balance=85, allowance=100)

    deliver("customer.subscription.updated", subscription(price=PRICE_PRO))

    ent, wallet = get_state(user.id)
    assert wallet.credits_balance == 10
    assert wallet.monthly_allowance == 10
    assert ent.plan == "pro"
    assert ent.tier == "pro"
    assert ent.grace_until is None
    clamp = LedgerEntry.query.filter_by(user_id=user.id, action="clamp").one()
    assert clamp.amount == -75
    assert clamp.balance_after == 10


def test_tier_downgrade_is_not_reapplied(deliver, make_user, seed_state):
    user = make_user("bob2@example.com", customer_id="cus_1")
    seed_state(user.id, plan="proplus", balance=85, allowance=100)
    deliver("customer.subscription.updated", subscription(price=PRICE_PRO))

    # user spends down to 4, then the same downgrade is redelivered
    seed_state(user.id, plan="proplus", balance=4, allowance=10)
    deliver("customer.subscription.updated", subscription(price=PRICE_PRO))

    ent, wallet = get_state(user.id)
    assert wallet.credits_balance == 4
    assert ent.plan == "pro"
    assert LedgerEntry.query.filter_by(user_id=user.id, action="clamp").count() == 1


def test_community_to_proplus_is_a_downgrade(deliver, make_user, seed_state):
    user = make_user("community@example.com", customer_id="cus_1")
    seed_state(user.id, plan="proplus", tier="community", balance=5000, allowance=999999)

    deliver("customer.subscription.updated", subscription(price=PRICE_PROPLUS))

    ent, wallet = get_state(user.id)
    assert ent.plan == "proplus"
    assert ent.tier == "proplus"
    assert wallet.credits_balance == 100


def test_upgrade_only_resyncs_allowance(deliver, make_user, seed_state):
    user = make_user("up@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=3, allowance=10)

    deliver("customer.subscription.updated", subscription(price=PRICE_PROPLUS))

    ent, wallet = get_state(user.id)
    assert ent.plan == "proplus"
    assert wallet.credits_balance == 3
    assert wallet.monthly_allowance == 100


def test_cancel_at_period_end_starts_grace(deliver, make_user, seed_state):
    user = make_user("carol@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=7, allowance=10)

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))

    ent, wallet = get_state(user.id)
    assert wallet.credits_balance == 7
    assert wallet.monthly_allowance == 0
    assert ent.plan == "pro"
    assert naive(ent.grace_until) == naive(PERIOD_END_DT)
    assert ent.downgraded_at is not None


def test_grace_is_stamped_once(deliver, make_user, seed_state):
    user = make_user("carol2@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=7, allowance=10)

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    ent, _ = get_state(user.id)
    first_stamp = ent.downgraded_at

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    ent, wallet = get_state(user.id)
    assert ent.downgraded_at == first_stamp
    assert wallet.credits_balance == 7
    assert CreditEvent.query.filter_by(user_id=user.id, event_type="graceful_downgrade").count() == 1


def test_deletion_converges_with_cancel_at_period_end(deliver, make_user, seed_state):
    cancelled = make_user("cancel@example.com", customer_id="cus_a")
    deleted = make_user("delete@example.com", customer_id="cus_b")
    seed_state(cancelled.id, plan="pro", sub_id="sub_a", customer="cus_a", balance=6, allowance=10)
    seed_state(deleted.id, plan="pro", sub_id="sub_b", customer="cus_b", balance=6, allowance=10)

    deliver("customer.subscription.updated",
            subscription(sub_id="sub_a", customer="cus_a", cancel_at_period_end=True))
    deliver("customer.subscription.deleted",
            subscription(sub_id="sub_b", customer="cus_b", status="canceled"))

    for user in (cancelled, deleted):
        ent, wallet = get_state(user.id)
        assert ent.plan == "pro"
        assert ent.status == "active"
        assert naive(ent.grace_until) == naive(PERIOD_END_DT)
        assert wallet.credits_balance == 6
        assert wallet.monthly_allowance == 0


def test_deletion_after_cancel_keeps_first_grace(deliver, make_user, seed_state):
    user = make_user("both@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=6, allowance=10)

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    ent, _ = get_state(user.id)
    stamp = ent.downgraded_at

    deliver("customer.subscription.deleted", subscription(status="canceled"))
    ent, wallet = get_state(user.id)
    assert ent.downgraded_at == stamp
    assert wallet.credits_balance == 6


def test_stale_subscription_deletion_is_ignored(deliver, make_user, seed_state):
    user = make_user("moved@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", sub_id="sub_new", balance=9, allowance=10)

    deliver("customer.subscription.deleted", subscription(sub_id="sub_old", status="canceled"))

    ent, wallet = get_state(user.id)
    assert ent.grace_until is None
    assert wallet.monthly_allowance == 10


def test_reactivation_clears_grace(deliver, make_user, seed_state):
    user = make_user("back@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=7, allowance=10)
    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))

    deliver("customer.subscription.updated", subscription())

    ent, wallet = get_state(user.id)
    assert ent.grace_until is None
    assert ent.downgraded_at is None
    assert wallet.monthly_allowance == 10
    assert wallet.credits_balance == 7


def test_switch_to_unmapped_price_is_a_price_downgrade(deliver, make_user, seed_state):
    user = make_user("price@example.com", customer_id="cus_1")
    seed_state(user.id, plan="proplus", balance=40, allowance=100)

    deliver("customer.subscription.updated", subscription(price=PRICE_UNMAPPED))

    ent, wallet = get_state(user.id)
    assert ent.plan == "proplus"
    assert ent.grace_until is not None
    assert wallet.credits_balance == 40
    assert wallet.monthly_allowance == 0


def test_allowance_resync_on_routine_update(deliver, make_user, seed_state):
    user = make_user("dave@example.com", customer_id="cus_1")
    deliver("customer.subscription.created", subscription(price=PRICE_COMMUNITY))
    seed_state(user.id, plan="proplus", tier="community", balance=12, allowance=0)

    deliver("customer.subscription.updated", subscription(price=PRICE_COMMUNITY))

    ent, wallet = get_state(user.id)
    assert wallet.monthly_allowance == 999999
    assert wallet.credits_balance == 12
    assert ent.tier == "community"


def test_blocked_user_is_not_reactivated(deliver, make_user, seed_state):
    user = make_user("blocked@example.com", customer_id="cus_1")
    seed_state(user.id, plan="free", tier="free", status="inactive", balance=0,
               is_blocked=True, blocked_reason="Credit purchase refunded")

    deliver("customer.subscription.updated", subscription(sub_id="sub_2"))

    ent, wallet = get_state(user.id)
    assert ent.is_blocked
    assert ent.plan == "free"
    assert ent.stripe_subscription_id == "sub_2"
    assert wallet.credits_balance == 0


def test_unknown_customer_on_non_paid_event_is_staged(deliver, stripe_stub):
    stripe_stub.add_customer("cus_9", email="Later@Example.com")

    deliver("customer.subscription.updated", subscription(customer="cus_9", cancel_at_period_end=True))

    row = db.session.get(PendingEntitlement, "later@example.com")
    assert row is not None
    assert row.plan == "free"
    assert row.stripe_customer_id == "cus_9"
    assert row.credits_to_grant == 10


def test_deleted_customer_is_not_resolved(deliver, stripe_stub):
    stripe_stub.add_customer("cus_gone", deleted=True)

    resp = deliver("customer.subscription.created", subscription(customer="cus_gone"))

    assert resp.status_code == 200
    assert PendingEntitlement.query.count() == 0


def test_existing_account_found_by_email_gets_mapped(deliver, make_user, stripe_stub):
    user = make_user("erin@example.com")
    stripe_stub.add_customer("cus_e", email="ERIN@example.com")

    deliver("customer.subscription.created", subscription(customer="cus_e"))
    deliver("customer.subscription.updated", subscription(customer="cus_e"))

    ent, wallet = get_state(user.id)
    assert ent.plan == "pro"
    assert wallet.credits_balance == 10
    # the second event resolved through the stored mapping
    assert stripe_stub.customer_calls == ["cus_e"]


def test_authorized_users_and_snapshots_follow_subscription(deliver, make_user):
    user = make_user("frank@example.com", customer_id="cus_1")

    deliver("customer.subscription.created", subscription())
    assert db.session.get(AuthorizedUser, "frank@example.com").status == "active"

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    assert db.session.get(AuthorizedUser, "frank@example.com").status == "inactive"

    snaps = SubscriptionSnapshot.query.filter_by(user_id=user.id).order_by(SubscriptionSnapshot.id).all()
    assert [s.cancel_at_period_end for s in snaps] == [False, True]


def test_recancel_after_reactivation_starts_a_new_grace(deliver, make_user, seed_state):
    user = make_user("cycle@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=8, allowance=10)

    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    deliver("customer.subscription.updated", subscription())
    ent, wallet = get_state(user.id)
    assert ent.grace_until is None
    assert wallet.monthly_allowance == 10

    # same subscription, same billing period
    deliver("customer.subscription.updated", subscription(cancel_at_period_end=True))
    ent, wallet = get_state(user.id)
    assert naive(ent.grace_until) == naive(PERIOD_END_DT)
    assert ent.downgraded_at is not None
    assert wallet.monthly_allowance == 0
    stamp = ent.downgraded_at

    deliver("customer.subscription.deleted", subscription(status="canceled"))
    ent, wallet = get_state(user.id)
    assert ent.plan == "pro"
    assert naive(ent.grace_until) == naive(PERIOD_END_DT)
    assert ent.downgraded_at == stamp
    assert wallet.monthly_allowance == 0
    assert wallet.credits_balance == 8
    assert CreditEvent.query.filter_by(user_id=user.id, event_type="graceful_downgrade").count() == 2


def test_deletion_after_reactivation_enters_grace(deliver, make_user, seed_state):
    user = make_user("cycle2@example.com", customer_id="cus_1")
    seed_state(user.id, plan="pro", balance=5, allowance=10)
    deliver("customer.subscription.deleted", subscription(status="canceled"))
    deliver("customer.subscription.updated", subscription())

    deliver("customer.subscription.deleted", subscription(status="canceled"))

    ent, wallet = get_state(user.id)
    assert ent.grace_until is not None
    assert wallet.monthly_allowance == 0
