# 全モデルをインポート (Alembic autogenerate用)
from app.models.user import User
from app.models.subscription_plan import SubscriptionPlan
from app.models.subscription import UserSubscription
from app.models.payment_intent import PaymentIntent
from app.models.token_balance_transaction import TokenBalanceTransaction
from app.models.processed_webhook_event import ProcessedWebhookEvent

__all__ = [
    "User",
    "SubscriptionPlan",
    "UserSubscription",
    "PaymentIntent",
    "TokenBalanceTransaction",
    "ProcessedWebhookEvent",
]
