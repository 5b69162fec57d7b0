from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, Enum as SAEnum, ForeignKey, func
from app.core.database import Base
from app.models.subscription_plan import BILLING_PERIODS

SUBSCRIPTION_STATUSES = ("active", "past_due", "cancelled")


class UserSubscription(Base):
    """購読 (物理削除しない。statusのみ遷移)"""
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False, index=True)

    # 作成時点のプラン設定をコピー (後のプラン編集の影響を受けない)
    billing_period = Column(SAEnum(*BILLING_PERIODS, name="billing_period"), nullable=False)
    billing_period_count = Column(Integer, nullable=False, default=1)

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    next_billing_date = Column(DateTime, nullable=True)

    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        nullable=False,
        default="active",
        index=True,
    )
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    # トライアル (is_trial=True なら trial_ends_at == current_period_end)
    is_trial = Column(Boolean, nullable=False, default=False)
    trial_ends_at = Column(DateTime, nullable=True)

    # CloudPayments連携
    external_subscription_id = Column(String(128), nullable=True, unique=True)
    card_token = Column(String(255), nullable=True)
    card_mask = Column(String(64), nullable=True, comment="例: Visa ****4242")
    last_payment_date = Column(DateTime, nullable=True)
    last_payment_amount = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
