from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, Numeric, Enum as SAEnum, JSON, ForeignKey, func
from app.core.database import Base

PAYMENT_INTENT_STATUSES = ("pending", "succeeded", "failed", "expired")


class PaymentIntent(Base):
    """チェックアウト試行とWebhookを突き合わせる短命レコード"""
    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), unique=True, nullable=False, index=True, comment="クライアント公開ID")
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_name = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="RUB")
    status = Column(
        SAEnum(*PAYMENT_INTENT_STATUSES, name="payment_intent_status"),
        nullable=False,
        default="pending",
        index=True,
    )
    is_trial = Column(Boolean, nullable=False, default=False)
    external_subscription_id = Column(String(128), nullable=True)
    external_transaction_id = Column(String(64), nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    # "metadata" はDeclarativeBaseの予約属性のため属性名を変える
    intent_metadata = Column("metadata", JSON, nullable=True, comment="クライアントIP・UA・表示名")
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
