from sqlalchemy import Column, Integer, String, Text, BigInteger, DateTime, Enum as SAEnum, JSON, ForeignKey, Index, func
from app.core.database import Base

TRANSACTION_TYPES = ("credit", "debit", "reset", "adjustment")


class TokenBalanceTransaction(Base):
    """トークン残高台帳 (追記のみ)"""
    __tablename__ = "token_balance_transactions"
    __table_args__ = (
        Index("ix_token_balance_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SAEnum(*TRANSACTION_TYPES, name="token_balance_transaction_type"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False, comment="符号付き差分")
    balance_after = Column(BigInteger, nullable=False, comment="適用直後の残高")
    reference_type = Column(String(32), nullable=True, comment="payment / usage / subscription_reset / admin / migration")
    reference_id = Column(String(128), nullable=True)
    description = Column(Text, nullable=True)
    transaction_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
