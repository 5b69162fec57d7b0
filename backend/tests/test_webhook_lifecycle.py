"""
Tests for fail / recurrent / cancel webhooks: grace periods, trial conversion and cancellation.
"""

import json
from datetime import timedelta

from app.models.subscription import UserSubscription
from app.models.token_balance_transaction import TokenBalanceTransaction
from app.schemas.webhook import Ok
from app.services import payment_intents
from app.services.billing_periods import calculate_period_end
from app.services.webhook_service import process_webhook

from conftest import NOW


def _recurrent(sub_id, status, user, successful=1, **extra):
    fields = {
        "Id": sub_id,
        "AccountId": str(user.id),
        "Status": status,
        "Amount": "1999",
        "Currency": "RUB",
        "SuccessfulTransactionsNumber": str(successful),
        "FailedTransactionsNumber": "0",
    }
    fields.update(extra)
    return fields


def _reload(db, sub):
    db.expire_all()
    return db.get(UserSubscription, sub.id)


class TestFail:
    def test_marks_subscription_past_due_and_fails_intent(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        intent = payment_intents.create_intent(db, catalog, user, "basic_monthly", now=NOW)

        fields = {
            "TransactionId": "3001",
            "Amount": "1999",
            "AccountId": str(user.id),
            "SubscriptionId": "sc_1",
            "Reason": "Insufficient funds",
            "ReasonCode": "5051",
            "Data": json.dumps({"sessionId": intent.session_id}),
        }
        assert process_webhook(db, catalog, gateway, "fail", fields, now=NOW) == Ok()

        assert _reload(db, sub).status == "past_due"
        status = payment_intents.get_intent_status(db, intent.session_id, user.id, now=NOW)
        assert status.status == "failed"
        assert status.failure_reason == "Insufficient funds (code: 5051)"

    def test_fail_with_account_only_marks_active_subscription(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)

        # 定期課金の失敗通知には SubscriptionId が付かないことがある
        fields = {
            "TransactionId": "3002",
            "Amount": "1999",
            "AccountId": str(user.id),
            "Reason": "Insufficient funds",
            "ReasonCode": "5051",
        }
        assert process_webhook(db, catalog, gateway, "fail", fields, now=NOW) == Ok()

        assert _reload(db, sub).status == "past_due"

    def test_fail_without_subscription_or_account(self, db, catalog, gateway):
        assert process_webhook(db, catalog, gateway, "fail", {"TransactionId": "1", "Amount": "10"}, now=NOW) == Ok()

    def test_fail_does_not_override_cancelled(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        old = make_subscription(user, external_id="sc_old")
        make_subscription(user, external_id="sc_new")

        fields = {"TransactionId": "1", "AccountId": str(user.id), "SubscriptionId": "sc_old"}
        process_webhook(db, catalog, gateway, "fail", fields, now=NOW)

        assert _reload(db, old).status == "cancelled"


class TestRecurrentGracePeriod:
    def test_past_due_then_recovered(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        first_end = sub.current_period_end

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "PastDue", user), now=first_end)
        assert _reload(db, sub).status == "past_due"

        recovered_at = first_end + timedelta(days=2)
        result = process_webhook(
            db, catalog, gateway, "recurrent", _recurrent("sc_1", "Active", user, successful=2), now=recovered_at,
        )

        assert result == Ok()
        sub = _reload(db, sub)
        assert sub.status == "active"
        assert sub.current_period_start == recovered_at
        assert sub.current_period_end == calculate_period_end(recovered_at, "monthly")

    def test_recurrent_renewal_resets_ledger(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user(token_balance=120)
        sub = make_subscription(user)
        first_end = sub.current_period_end

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "Active", user, successful=2), now=first_end)

        sub = _reload(db, sub)
        assert sub.current_period_start == first_end
        assert user.token_balance == 3_000_000
        txn = db.query(TokenBalanceTransaction).one()
        assert txn.reference_type == "subscription_reset"
        assert txn.reference_id == "sc_1"
        assert txn.amount == 3_000_000 - 120


class TestRecurrentTrialConversion:
    def test_first_charge_after_trial(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user(is_tester=True)
        trial_end = NOW + timedelta(days=3)
        sub = make_subscription(user, external_id="sc_trial", is_trial=True, trial_ends_at=trial_end)
        assert sub.current_period_end == trial_end

        process_webhook(
            db, catalog, gateway, "recurrent", _recurrent("sc_trial", "Active", user, successful=1), now=trial_end,
        )

        sub = _reload(db, sub)
        assert not sub.is_trial
        assert sub.current_period_start == trial_end
        assert sub.current_period_end == calculate_period_end(trial_end, "monthly")
        assert user.token_balance == 3_000_000


class TestRecurrentIdempotency:
    def test_duplicate_active_is_noop(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        first_end = sub.current_period_end
        fields = _recurrent("sc_1", "Active", user, successful=2)

        process_webhook(db, catalog, gateway, "recurrent", fields, now=first_end)
        process_webhook(db, catalog, gateway, "recurrent", fields, now=first_end + timedelta(minutes=1))

        sub = _reload(db, sub)
        assert sub.current_period_end == calculate_period_end(first_end, "monthly")
        assert db.query(TokenBalanceTransaction).count() == 1

    def test_next_charge_is_not_a_duplicate(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        second_start = sub.current_period_end
        third_start = calculate_period_end(second_start, "monthly")

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "Active", user, 2), now=second_start)
        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "Active", user, 3), now=third_start)

        sub = _reload(db, sub)
        assert sub.current_period_start == third_start

    def test_active_on_cancelled_subscription_is_ignored(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        old = make_subscription(user, external_id="sc_old")
        make_subscription(user, external_id="sc_new")

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_old", "Active", user, 2), now=NOW)

        assert _reload(db, old).status == "cancelled"
        assert db.query(UserSubscription).filter(UserSubscription.status == "active").count() == 1


class TestRecurrentCancellation:
    def test_cancelled_keeps_access_until_period_end(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "Cancelled", user), now=NOW)

        sub = _reload(db, sub)
        assert sub.status == "active"
        assert sub.cancel_at_period_end
        assert sub.cancelled_at == NOW
        assert user.current_plan == "basic_monthly"

    def test_rejected_and_expired_also_schedule(self, db, catalog, gateway, make_user, make_subscription):
        for status in ("Rejected", "Expired"):
            user = make_user()
            sub = make_subscription(user, external_id=f"sc_{status}")
            process_webhook(db, catalog, gateway, "recurrent", _recurrent(f"sc_{status}", status, user), now=NOW)
            assert _reload(db, sub).cancel_at_period_end

    def test_unknown_subscription_is_accepted(self, db, catalog, gateway, make_user):
        user = make_user()
        assert process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_x", "Active", user), now=NOW) == Ok()

    def test_unknown_status_is_accepted(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        assert process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_1", "Paused", user), now=NOW) == Ok()
        assert _reload(db, sub).status == "active"

    def test_missing_id_is_rejected(self, db, catalog, gateway, make_user):
        user = make_user()
        fields = _recurrent("", "Active", user)
        assert process_webhook(db, catalog, gateway, "recurrent", fields, now=NOW).code == 13

    def test_falls_back_to_active_subscription_of_account(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user, external_id=None)

        process_webhook(db, catalog, gateway, "recurrent", _recurrent("sc_late", "Active", user, 1), now=sub.current_period_end)

        sub = _reload(db, sub)
        assert sub.external_subscription_id == "sc_late"


class TestCancel:
    def test_cancel_with_subscription_id(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)

        fields = {"Id": "sc_1", "AccountId": str(user.id)}
        assert process_webhook(db, catalog, gateway, "cancel", fields, now=NOW) == Ok()

        sub = _reload(db, sub)
        assert sub.cancel_at_period_end
        assert sub.status == "active"

    def test_payment_cancel_without_subscription_is_ignored(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)

        fields = {"TransactionId": "5001", "AccountId": str(user.id)}
        assert process_webhook(db, catalog, gateway, "cancel", fields, now=NOW) == Ok()
        assert not _reload(db, sub).cancel_at_period_end

    def test_cancel_for_other_account_is_ignored(self, db, catalog, gateway, make_user, make_subscription):
        owner, other = make_user(), make_user()
        sub = make_subscription(owner)

        fields = {"Id": "sc_1", "AccountId": str(other.id)}
        assert process_webhook(db, catalog, gateway, "cancel", fields, now=NOW) == Ok()
        assert not _reload(db, sub).cancel_at_period_end

    def test_cancel_is_idempotent(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        sub = make_subscription(user)
        fields = {"Id": "sc_1", "AccountId": str(user.id)}

        process_webhook(db, catalog, gateway, "cancel", fields, now=NOW)
        process_webhook(db, catalog, gateway, "cancel", fields, now=NOW + timedelta(days=1))

        assert _reload(db, sub).cancelled_at == NOW
