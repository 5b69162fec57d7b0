from sqlalchemy import Column, Integer, String, Boolean, BigInteger, Numeric, DateTime, Enum as SAEnum, JSON, func
from app.core.database import Base

BILLING_PERIODS = ("daily", "weekly", "monthly", "annual")


class SubscriptionPlan(Base):
    """プランカタログのDB写し (初回決済時に自動作成)"""
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False, index=True, comment="プラン名 (カタログキー)")
    display_name = Column(String(128), nullable=True)

    # 請求設定
    billing_period = Column(
        SAEnum(*BILLING_PERIODS, name="billing_period"),
        nullable=False,
        default="monthly",
    )
    billing_period_count = Column(Integer, nullable=False, default=1, comment="期間倍数 (3ヶ月=monthly×3)")

    # 期間あたりのトークン付与量
    token_quota = Column(BigInteger, nullable=False)
    features = Column(JSON, nullable=True, comment="機能フラグ (不透明)")
    price = Column(Numeric(10, 2), nullable=True, comment="参考価格 (USD)")

    is_active = Column(Boolean, nullable=False, default=True)
    is_tester_plan = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
