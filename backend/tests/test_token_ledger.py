"""
Tests for the token balance ledger: atomic adjustments and chain integrity.
"""

import pytest

from app.models.token_balance_transaction import TokenBalanceTransaction
from app.services import token_ledger
from app.services.token_ledger import InsufficientBalanceError, LedgerError


class TestResetBalance:
    def test_sets_exact_balance_and_records_delta(self, db, make_user):
        user = make_user(token_balance=1200)
        change = token_ledger.reset_balance(db, user.id, 3_000_000, reason="payment", plan_name="basic_monthly")

        db.refresh(user)
        assert user.token_balance == 3_000_000
        assert user.last_balance_reset_at is not None
        assert change.previous_balance == 1200
        assert change.amount == 3_000_000 - 1200

        txn = db.query(TokenBalanceTransaction).one()
        assert txn.type == "reset"
        assert txn.balance_after == 3_000_000
        assert txn.transaction_metadata["planName"] == "basic_monthly"

    def test_reset_to_lower_value_records_negative_delta(self, db, make_user):
        user = make_user(token_balance=500)
        change = token_ledger.reset_balance(db, user.id, 100, reason="admin")
        assert change.amount == -400

    def test_unknown_reason_rejected(self, db, make_user):
        user = make_user()
        with pytest.raises(ValueError):
            token_ledger.reset_balance(db, user.id, 10, reason="gift")

    def test_missing_user_raises_ledger_error(self, db):
        with pytest.raises(LedgerError):
            token_ledger.reset_balance(db, 999_999, 10, reason="admin")


class TestAdjustBalance:
    def test_debit_floors_at_zero_and_records_actual_delta(self, db, make_user):
        user = make_user(token_balance=300)
        change = token_ledger.adjust_balance(db, user.id, -500, type_="debit")

        assert change.new_balance == 0
        assert change.amount == -300
        txn = db.query(TokenBalanceTransaction).one()
        assert txn.amount == -300
        assert txn.balance_after == 0

    def test_credit_applies_exactly(self, db, make_user):
        user = make_user(token_balance=100)
        change = token_ledger.credit_balance(db, user.id, 50, reason="promo")
        assert change.new_balance == 150

    def test_adjustment_cannot_go_negative(self, db, make_user):
        user = make_user(token_balance=10)
        with pytest.raises(LedgerError):
            token_ledger.adjust_balance(db, user.id, -11)

        db.refresh(user)
        assert user.token_balance == 10
        assert db.query(TokenBalanceTransaction).count() == 0

    def test_reset_type_must_use_reset_balance(self, db, make_user):
        user = make_user()
        with pytest.raises(ValueError):
            token_ledger.adjust_balance(db, user.id, 10, type_="reset")


class TestDeductBalance:
    def test_partial_deduction(self, db, make_user):
        user = make_user(token_balance=40)
        change = token_ledger.deduct_balance(db, user.id, 100, reference_id="chat_1")
        assert change.amount == -40
        txn = db.query(TokenBalanceTransaction).one()
        assert "Partial deduction" in txn.description

    def test_empty_balance_raises(self, db, make_user):
        user = make_user(token_balance=0)
        with pytest.raises(InsufficientBalanceError) as exc:
            token_ledger.deduct_balance(db, user.id, 10)
        assert exc.value.current_balance == 0
        assert exc.value.requested_amount == 10


class TestLedgerChain:
    def test_chain_is_consistent_after_mixed_operations(self, db, make_user):
        user = make_user()
        token_ledger.reset_balance(db, user.id, 1000, reason="payment")
        token_ledger.deduct_balance(db, user.id, 250)
        token_ledger.credit_balance(db, user.id, 100, reason="refund")
        token_ledger.deduct_balance(db, user.id, 5000)
        token_ledger.reset_balance(db, user.id, 3_000_000, reason="subscription_reset")

        report = token_ledger.verify_ledger_chain(db, user.id)
        assert report.ok
        assert report.transaction_count == 5
        assert report.ledger_balance == report.user_balance == 3_000_000

    def test_tampered_row_is_detected(self, db, make_user):
        user = make_user()
        token_ledger.reset_balance(db, user.id, 1000, reason="payment")
        change = token_ledger.deduct_balance(db, user.id, 100)

        txn = db.get(TokenBalanceTransaction, change.transaction_id)
        txn.balance_after = 950
        db.commit()

        report = token_ledger.verify_ledger_chain(db, user.id)
        assert not report.ok
        assert report.broken_at_transaction_id == change.transaction_id

    def test_balance_changed_outside_ledger_is_detected(self, db, make_user):
        user = make_user()
        token_ledger.reset_balance(db, user.id, 1000, reason="payment")
        user.token_balance = 5
        db.commit()

        report = token_ledger.verify_ledger_chain(db, user.id)
        assert not report.ok
        assert report.ledger_balance == 1000

    def test_history_is_newest_first(self, db, make_user):
        user = make_user()
        token_ledger.reset_balance(db, user.id, 1000, reason="payment")
        token_ledger.deduct_balance(db, user.id, 1)
        history = token_ledger.get_balance_transactions(db, user.id)
        assert [t.type for t in history] == ["debit", "reset"]


def test_format_token_balance():
    assert token_ledger.format_token_balance(3_000_000) == "3.0M"
    assert token_ledger.format_token_balance(35_000) == "35K"
    assert token_ledger.format_token_balance(999) == "999"
