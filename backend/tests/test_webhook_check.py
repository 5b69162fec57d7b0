"""
Tests for the check webhook: validation before the gateway charges the card.
"""

import json

from app.models.subscription import UserSubscription
from app.models.token_balance_transaction import TokenBalanceTransaction
from app.schemas.webhook import Ok, Reject
from app.services.webhook_service import process_webhook

from conftest import NOW


def _check(db, catalog, gateway, **fields):
    return process_webhook(db, catalog, gateway, "check", fields, now=NOW)


class TestCheckWebhook:
    def test_valid_payment(self, db, catalog, gateway, make_user):
        user = make_user()
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="1999.00", Currency="RUB",
            Data=json.dumps({"planName": "basic_monthly"}),
        )
        assert result == Ok()

    def test_usd_price(self, db, catalog, gateway, make_user):
        user = make_user()
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="19.99", Currency="USD",
            Data=json.dumps({"planName": "basic_monthly"}),
        )
        assert result == Ok()

    def test_amount_mismatch_has_no_side_effects(self, db, catalog, gateway, make_user):
        user = make_user(token_balance=42)
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount=500, Currency="RUB",
            Data=json.dumps({"planName": "basic_monthly"}),
        )

        assert isinstance(result, Reject)
        assert result.code == 12
        db.refresh(user)
        assert user.token_balance == 42
        assert db.query(UserSubscription).count() == 0
        assert db.query(TokenBalanceTransaction).count() == 0

    def test_missing_account(self, db, catalog, gateway):
        assert _check(db, catalog, gateway, Amount="1999", Currency="RUB").code == 10

    def test_unknown_account(self, db, catalog, gateway):
        assert _check(db, catalog, gateway, AccountId="424242", Amount="1999").code == 10

    def test_non_numeric_account(self, db, catalog, gateway):
        assert _check(db, catalog, gateway, AccountId="user-abc", Amount="1999").code == 10

    def test_unknown_plan(self, db, catalog, gateway, make_user):
        user = make_user()
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="1999", Data=json.dumps({"planName": "platinum"}),
        )
        assert result.code == 13

    def test_free_tester_plan_cannot_be_charged(self, db, catalog, gateway, make_user):
        user = make_user(is_tester=True)
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="0", Data=json.dumps({"planName": "tester"}),
        )
        assert result.code == 13

    def test_plan_unresolvable(self, db, catalog, gateway, make_user):
        user = make_user()
        assert _check(db, catalog, gateway, AccountId=str(user.id), Amount="1999").code == 13

    def test_plan_from_subscription_id(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        make_subscription(user, "basic_annual", external_id="sc_annual")
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="14999", Currency="RUB", SubscriptionId="sc_annual",
        )
        assert result == Ok()

    def test_plan_from_active_subscription(self, db, catalog, gateway, make_user, make_subscription):
        user = make_user()
        make_subscription(user, "basic_quarterly", external_id=None)
        assert _check(db, catalog, gateway, AccountId=str(user.id), Amount="4999").code == 0
        assert _check(db, catalog, gateway, AccountId=str(user.id), Amount="1999").code == 12

    def test_malformed_data_is_ignored(self, db, catalog, gateway, make_user):
        user = make_user()
        assert _check(db, catalog, gateway, AccountId=str(user.id), Amount="1999", Data="{not json").code == 13


class TestCheckTrialHold:
    def test_tester_trial_accepted(self, db, catalog, gateway, make_user):
        user = make_user(is_tester=True)
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="1", Data=json.dumps({"planName": "basic_monthly", "isTrial": True}),
        )
        assert result == Ok()

    def test_non_tester_trial_rejected(self, db, catalog, gateway, make_user):
        user = make_user(is_tester=False)
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="1", Data=json.dumps({"planName": "basic_monthly", "isTrial": True}),
        )
        assert result.code == 13

    def test_trial_flag_with_full_amount_is_a_normal_payment(self, db, catalog, gateway, make_user):
        user = make_user(is_tester=False)
        result = _check(
            db, catalog, gateway,
            AccountId=str(user.id), Amount="1999", Data=json.dumps({"planName": "basic_monthly", "isTrial": True}),
        )
        assert result == Ok()
