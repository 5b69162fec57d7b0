"""決済インテント: チェックアウト開始からWebhookでの確定までを追跡する"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.user import User
from app.models.payment_intent import PaymentIntent
from app.services.plan_catalog import PlanCatalog
from app.services.billing_periods import utcnow
from app.services import subscription_service
from app.core.logging import get_logger

logger = get_logger(__name__)

SESSION_PREFIX = "ps_"
TRIAL_SESSION_PREFIX = "ps_trial_"

# 遷移元として許可する状態。succeeded は終端
# 例外: failed / expired からの succeeded は許可する (期限切れ・失敗表示後に届いた決済成功通知を優先)
_ALLOWED_FROM = {
    "succeeded": ("pending", "failed", "expired"),
    "failed": ("pending",),
    "expired": ("pending",),
}


class UnknownPlanError(Exception):
    def __init__(self, plan_name: str):
        super().__init__(f"Unknown plan: {plan_name}")
        self.plan_name = plan_name


class TrialAlreadyUsedError(Exception):
    pass


class IntentNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class IntentStatus:
    status: str
    subscription: Optional[dict] = None
    failure_reason: Optional[str] = None


def generate_session_id(is_trial: bool = False) -> str:
    """クライアントに渡す推測不能なID (ps_ + 56hex / ps_trial_ + 54hex)"""
    if is_trial:
        return TRIAL_SESSION_PREFIX + secrets.token_hex(27)
    return SESSION_PREFIX + secrets.token_hex(28)


def create_intent(
    db: Session,
    catalog: PlanCatalog,
    user: User,
    plan_name: str,
    is_trial: bool = False,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    currency: str = "RUB",
    now: Optional[datetime] = None,
) -> PaymentIntent:
    """
    チェックアウト開始時にインテントを作成する。

    金額はプランのRUB価格。トライアルの場合はカード認証用の保留額 (TRIAL_HOLD_AMOUNT)。
    """
    tier = catalog.get(plan_name)
    if tier is None or tier.is_free_plan:
        raise UnknownPlanError(plan_name)
    if is_trial and user.trial_used_at is not None:
        raise TrialAlreadyUsedError(f"Trial already used: user_id={user.id}")

    now = now or utcnow()
    amount = Decimal(settings.TRIAL_HOLD_AMOUNT) if is_trial else tier.price_in(currency)

    intent = PaymentIntent(
        session_id=generate_session_id(is_trial),
        user_id=user.id,
        plan_name=plan_name,
        amount=amount,
        currency=currency,
        status="pending",
        is_trial=is_trial,
        intent_metadata={
            "clientIp": client_ip,
            "userAgent": user_agent,
            "planDisplayName": tier.display_name_ru or tier.display_name,
        },
        expires_at=now + timedelta(minutes=settings.PAYMENT_INTENT_TTL_MINUTES),
        created_at=now,
    )
    db.add(intent)
    db.commit()
    db.refresh(intent)
    logger.info(
        f"決済インテント作成: user_id={user.id}, plan={plan_name}, trial={is_trial}, session={intent.session_id[:12]}..."
    )
    return intent


def get_intent(db: Session, session_id: str) -> Optional[PaymentIntent]:
    return db.query(PaymentIntent).filter(PaymentIntent.session_id == session_id).first()


def resolve_intent(
    db: Session,
    session_id: str,
    status: str,
    user_id: Optional[int] = None,
    external_transaction_id: Optional[str] = None,
    external_subscription_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> bool:
    """
    インテントを確定状態へ遷移させる (条件付きUPDATE)。
    既に同じ状態、または succeeded 済みなら何もしない。遷移した場合のみTrue。
    """
    if status not in _ALLOWED_FROM:
        raise ValueError(f"Unsupported intent status: {status}")
    if not session_id:
        return False

    values = {"status": status, "updated_at": utcnow()}
    if external_transaction_id:
        values["external_transaction_id"] = external_transaction_id
    if external_subscription_id:
        values["external_subscription_id"] = external_subscription_id
    if failure_reason is not None:
        values["failure_reason"] = failure_reason

    query = db.query(PaymentIntent).filter(
        PaymentIntent.session_id == session_id,
        PaymentIntent.status.in_(_ALLOWED_FROM[status]),
    )
    if user_id is not None:
        query = query.filter(PaymentIntent.user_id == user_id)

    updated = query.update(values, synchronize_session="fetch")
    db.commit()
    if updated:
        logger.info(f"決済インテント確定: session={session_id[:12]}..., status={status}")
    return updated > 0


def find_succeeded_by_transaction(db: Session, transaction_id: str) -> Optional[PaymentIntent]:
    """同一トランザクションで既に成功済みのインテント (pay再送の検出用)"""
    if not transaction_id:
        return None
    return db.query(PaymentIntent).filter(
        PaymentIntent.external_transaction_id == transaction_id,
        PaymentIntent.status == "succeeded",
    ).first()


def _subscription_summary(db: Session, user_id: int) -> Optional[dict]:
    sub = subscription_service.get_active_subscription(db, user_id)
    if sub is None:
        return None
    plan = subscription_service.get_plan(db, sub.plan_id)
    return {
        "planName": plan.name if plan else None,
        "status": sub.status,
        "isTrial": bool(sub.is_trial),
        "currentPeriodEnd": sub.current_period_end.isoformat(),
        "cardMask": sub.card_mask,
    }


def get_intent_status(
    db: Session,
    session_id: str,
    user_id: int,
    now: Optional[datetime] = None,
) -> IntentStatus:
    """
    ポーリング用のステータス取得。他ユーザーのインテントは存在しないものとして扱う。
    期限切れの pending はここで expired に遷移させる。
    """
    intent = db.query(PaymentIntent).filter(
        PaymentIntent.session_id == session_id,
        PaymentIntent.user_id == user_id,
    ).first()
    if intent is None:
        raise IntentNotFoundError(session_id)

    now = now or utcnow()
    if intent.status == "pending" and intent.expires_at <= now:
        resolve_intent(db, session_id, "expired", user_id=user_id)
        db.refresh(intent)

    if intent.status == "succeeded":
        return IntentStatus(status="succeeded", subscription=_subscription_summary(db, user_id))
    if intent.status == "failed":
        return IntentStatus(status="failed", failure_reason=intent.failure_reason)
    return IntentStatus(status=intent.status)


def expire_pending_intents(db: Session, now: Optional[datetime] = None) -> int:
    """期限切れ pending を一括で expired に"""
    now = now or utcnow()
    updated = db.query(PaymentIntent).filter(
        PaymentIntent.status == "pending",
        PaymentIntent.expires_at <= now,
    ).update({"status": "expired", "updated_at": now}, synchronize_session=False)
    db.commit()
    return updated


def purge_old_intents(db: Session, now: Optional[datetime] = None, days: Optional[int] = None) -> int:
    """保持期間を過ぎたインテントを削除"""
    now = now or utcnow()
    days = settings.PAYMENT_INTENT_RETENTION_DAYS if days is None else days
    cutoff = now - timedelta(days=days)
    deleted = db.query(PaymentIntent).filter(
        PaymentIntent.created_at < cutoff,
    ).delete(synchronize_session=False)
    db.commit()
    return deleted
