"""トークン残高台帳

残高 (users.token_balance) の変更は必ずこのモジュール経由で行い、
1回の変更につき1行の TokenBalanceTransaction を追記する。
読み取り→計算→書き込み→追記はユーザー行のロック内で1トランザクションとして実行する。
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.models.user import User
from app.models.token_balance_transaction import TokenBalanceTransaction, TRANSACTION_TYPES
from app.services.billing_periods import utcnow
from app.core.logging import get_logger

logger = get_logger(__name__)

RESET_REASONS = ("payment", "subscription_reset", "admin", "migration")
CREDIT_REASONS = ("top_up", "promo", "adjustment", "refund")


class LedgerError(Exception):
    """台帳操作の失敗 (ロールバック済み)"""


class InsufficientBalanceError(LedgerError):
    def __init__(self, current_balance: int, requested_amount: int):
        super().__init__(
            f"Insufficient token balance. Current: {current_balance}, Requested: {requested_amount}"
        )
        self.current_balance = current_balance
        self.requested_amount = requested_amount


@dataclass(frozen=True)
class BalanceChange:
    transaction_id: int
    previous_balance: int
    new_balance: int
    amount: int


@dataclass(frozen=True)
class LedgerChainReport:
    user_id: int
    ok: bool
    transaction_count: int
    ledger_balance: Optional[int]
    user_balance: int
    broken_at_transaction_id: Optional[int] = None


def _lock_user(db: Session, user_id: int) -> User:
    """ユーザー行をロックして取得 (SELECT ... FOR UPDATE)"""
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if user is None:
        raise LedgerError(f"User not found: {user_id}")
    return user


def _append_transaction(
    db: Session,
    user_id: int,
    type_: str,
    amount: int,
    balance_after: int,
    reference_type: Optional[str],
    reference_id: Optional[str],
    description: Optional[str],
    metadata: Optional[dict],
) -> TokenBalanceTransaction:
    txn = TokenBalanceTransaction(
        user_id=user_id,
        type=type_,
        amount=amount,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        transaction_metadata=metadata or None,
        created_at=utcnow(),
    )
    db.add(txn)
    db.flush()
    return txn


def adjust_balance(
    db: Session,
    user_id: int,
    delta: int,
    type_: str = "adjustment",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> BalanceChange:
    """
    残高を delta だけ変更し、台帳に1行追記する。

    - debit: 0未満にはならない (実際に減算できた分だけ amount に記録)
    - credit / adjustment: current + delta をそのまま適用 (負になる場合はエラー)
    """
    if type_ not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {type_}")
    if type_ == "reset":
        raise ValueError("reset must go through reset_balance()")
    if type_ == "debit" and delta > 0:
        raise ValueError("debit delta must be <= 0")
    if type_ == "credit" and delta < 0:
        raise ValueError("credit delta must be >= 0")

    try:
        user = _lock_user(db, user_id)
        previous = int(user.token_balance or 0)
        if type_ == "debit":
            new_balance = max(0, previous + delta)
        else:
            new_balance = previous + delta
            if new_balance < 0:
                raise LedgerError(f"Balance cannot become negative: user_id={user_id}, {previous} + {delta}")

        user.token_balance = new_balance
        txn = _append_transaction(
            db,
            user_id=user_id,
            type_=type_,
            amount=new_balance - previous,
            balance_after=new_balance,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            metadata={**(metadata or {}), "previousBalance": previous},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return BalanceChange(
        transaction_id=txn.id,
        previous_balance=previous,
        new_balance=new_balance,
        amount=new_balance - previous,
    )


def reset_balance(
    db: Session,
    user_id: int,
    new_balance: int,
    reason: str,
    reference_id: Optional[str] = None,
    plan_name: Optional[str] = None,
    subscription_id: Optional[int] = None,
) -> BalanceChange:
    """残高をプランのクォータ等の値にそのまま置き換える (加算ではない)。amount には差分を記録"""
    if new_balance < 0:
        raise ValueError("Balance cannot be negative")
    if reason not in RESET_REASONS:
        raise ValueError(f"Unknown reset reason: {reason}")

    now = utcnow()
    try:
        user = _lock_user(db, user_id)
        previous = int(user.token_balance or 0)
        user.token_balance = new_balance
        user.last_balance_reset_at = now

        metadata = {"previousBalance": previous}
        if plan_name:
            metadata["planName"] = plan_name
        if subscription_id is not None:
            metadata["subscriptionId"] = subscription_id

        txn = _append_transaction(
            db,
            user_id=user_id,
            type_="reset",
            amount=new_balance - previous,
            balance_after=new_balance,
            reference_type=reason,
            reference_id=reference_id,
            description=f"Balance reset from {previous} to {new_balance}",
            metadata=metadata,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"残高リセット: user_id={user_id}, {previous} -> {new_balance}, reason={reason}")
    return BalanceChange(
        transaction_id=txn.id,
        previous_balance=previous,
        new_balance=new_balance,
        amount=new_balance - previous,
    )


def credit_balance(
    db: Session,
    user_id: int,
    amount: int,
    reason: str,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
) -> BalanceChange:
    """既存残高への加算 (トップアップ・プロモ・返金)"""
    if amount <= 0:
        raise ValueError("Credit amount must be positive")
    if reason not in CREDIT_REASONS:
        raise ValueError(f"Unknown credit reason: {reason}")
    return adjust_balance(
        db,
        user_id,
        amount,
        type_="credit",
        reference_type=reason,
        reference_id=reference_id,
        description=description or f"Credit: {amount} tokens",
    )


def deduct_balance(
    db: Session,
    user_id: int,
    amount: int,
    reference_type: str = "usage",
    reference_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> BalanceChange:
    """利用分の減算。残高不足なら残っている分だけ減算し、残高0なら InsufficientBalanceError"""
    if amount <= 0:
        raise ValueError("Deduction amount must be positive")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise LedgerError(f"User not found: {user_id}")
    current = int(user.token_balance or 0)
    if current <= 0:
        raise InsufficientBalanceError(current, amount)

    description = None
    if current < amount:
        description = f"Partial deduction (requested: {amount}, available: {current})"

    change = adjust_balance(
        db,
        user_id,
        -amount,
        type_="debit",
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        metadata=metadata,
    )
    if change.amount == 0:
        # ロック取得までの間に他リクエストが残高を使い切った
        raise InsufficientBalanceError(change.previous_balance, amount)
    return change


def get_balance_transactions(
    db: Session, user_id: int, limit: int = 50, offset: int = 0
) -> list[TokenBalanceTransaction]:
    """台帳履歴 (新しい順)"""
    return db.query(TokenBalanceTransaction).filter(
        TokenBalanceTransaction.user_id == user_id,
    ).order_by(
        TokenBalanceTransaction.created_at.desc(),
        TokenBalanceTransaction.id.desc(),
    ).limit(limit).offset(offset).all()


def verify_ledger_chain(db: Session, user_id: int) -> LedgerChainReport:
    """
    台帳の連鎖整合性を検証する。

    作成順に並べた各行について balance_after == 直前の balance_after + amount が成り立ち、
    最終行の balance_after が users.token_balance と一致すること。
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise LedgerError(f"User not found: {user_id}")
    user_balance = int(user.token_balance or 0)

    rows = db.query(TokenBalanceTransaction).filter(
        TokenBalanceTransaction.user_id == user_id,
    ).order_by(
        TokenBalanceTransaction.created_at.asc(),
        TokenBalanceTransaction.id.asc(),
    ).all()

    if not rows:
        return LedgerChainReport(
            user_id=user_id, ok=True, transaction_count=0, ledger_balance=None, user_balance=user_balance,
        )

    running = rows[0].balance_after
    for row in rows[1:]:
        running += row.amount
        if running != row.balance_after:
            logger.error(f"台帳不整合: user_id={user_id}, transaction_id={row.id}")
            return LedgerChainReport(
                user_id=user_id,
                ok=False,
                transaction_count=len(rows),
                ledger_balance=row.balance_after,
                user_balance=user_balance,
                broken_at_transaction_id=row.id,
            )

    return LedgerChainReport(
        user_id=user_id,
        ok=running == user_balance,
        transaction_count=len(rows),
        ledger_balance=running,
        user_balance=user_balance,
    )


def format_token_balance(tokens: int) -> str:
    """表示用 (1.5M / 35K / 999)"""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{round(tokens / 1000)}K"
    return f"{tokens:,}"
