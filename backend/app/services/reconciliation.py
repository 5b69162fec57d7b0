"""定期スイープ: Webhookで閉じなかった状態を時間経過で閉じる

各スイープは対象行を列挙し、1行ずつ条件付きUPDATEで処理する。
1行の失敗はロールバックしてログに残し、次の行へ進む。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.subscription import UserSubscription
from app.services import payment_intents, subscription_service
from app.services.billing_periods import utcnow
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SweepResult:
    metric: str
    count: int = 0
    failed: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    message: str = ""
    extra: dict = field(default_factory=dict)

    def as_response(self) -> dict:
        body = {self.metric: self.count, **self.extra}
        if self.failed:
            body["failed"] = self.failed
        body["timestamp"] = self.timestamp.isoformat() + "Z"
        body["message"] = self.message
        return body


def reset_quotas(db: Session, now: Optional[datetime] = None) -> SweepResult:
    """
    ゲートウェイ連携のない購読 (テスター・手動作成) の期間を前進させる。
    残高リセットは recurrent Webhook 側の責務のため、ここでは行わない。
    """
    now = now or utcnow()
    result = SweepResult(metric="renewed", timestamp=now)

    targets = db.query(UserSubscription).filter(
        UserSubscription.status == "active",
        UserSubscription.current_period_end <= now,
        UserSubscription.external_subscription_id.is_(None),
        UserSubscription.cancel_at_period_end == False,  # noqa: E712
    ).all()
    logger.info(f"期間更新対象: {len(targets)}件")

    for sub in targets:
        try:
            new_end = subscription_service.advance_lapsed_period(db, sub, now)
            if new_end is not None:
                result.count += 1
                logger.info(f"期間更新: subscription_id={sub.id}, user_id={sub.user_id}, 新期間終了={new_end.isoformat()}")
        except Exception as e:
            db.rollback()
            result.failed += 1
            logger.error(f"期間更新エラー: subscription_id={sub.id} - {e}")

    result.message = f"Renewed {result.count} subscriptions without a gateway subscription."
    return result


def cleanup_expired_trials(db: Session, now: Optional[datetime] = None) -> SweepResult:
    """トライアル期限を過ぎたアクティブ購読を通常の購読に切り替える"""
    now = now or utcnow()
    result = SweepResult(metric="converted", timestamp=now)

    targets = db.query(UserSubscription).filter(
        UserSubscription.is_trial == True,  # noqa: E712
        UserSubscription.trial_ends_at <= now,
        UserSubscription.status == "active",
    ).all()
    logger.info(f"トライアル期限切れ: {len(targets)}件")

    for sub in targets:
        try:
            if subscription_service.end_trial(db, sub.id):
                result.count += 1
                logger.info(f"トライアル終了: subscription_id={sub.id}, user_id={sub.user_id}")
        except Exception as e:
            db.rollback()
            result.failed += 1
            logger.error(f"トライアル終了エラー: subscription_id={sub.id} - {e}")

    result.message = f"Converted {result.count} expired trials to active subscriptions."
    return result


def cleanup_cancelled(db: Session, free_plan_name: str, now: Optional[datetime] = None) -> SweepResult:
    """解約予約済みで期間が終わった購読を cancelled にし、ユーザーを無料プランに戻す"""
    now = now or utcnow()
    result = SweepResult(metric="cleaned", timestamp=now)

    targets = db.query(UserSubscription).filter(
        UserSubscription.cancel_at_period_end == True,  # noqa: E712
        UserSubscription.status != "cancelled",
        UserSubscription.current_period_end <= now,
    ).all()
    logger.info(f"解約確定対象: {len(targets)}件")

    for sub in targets:
        try:
            if subscription_service.finalize_cancellation(db, sub, free_plan_name, now):
                result.count += 1
                logger.info(f"解約確定: subscription_id={sub.id}, user_id={sub.user_id}")
        except Exception as e:
            db.rollback()
            result.failed += 1
            logger.error(f"解約確定エラー: subscription_id={sub.id} - {e}")

    result.message = f"Removed access for {result.count} expired cancelled subscriptions."
    return result


def cleanup_payment_intents(
    db: Session,
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> SweepResult:
    """期限切れ pending を expired に、保持期間を過ぎたインテントを削除"""
    now = now or utcnow()
    retention_days = settings.PAYMENT_INTENT_RETENTION_DAYS if retention_days is None else retention_days
    result = SweepResult(metric="expired", timestamp=now)

    try:
        result.count = payment_intents.expire_pending_intents(db, now)
    except Exception as e:
        db.rollback()
        result.failed += 1
        logger.error(f"インテント期限切れ処理エラー: {e}")

    deleted = 0
    try:
        deleted = payment_intents.purge_old_intents(db, now, retention_days)
    except Exception as e:
        db.rollback()
        result.failed += 1
        logger.error(f"インテント削除エラー: {e}")

    result.extra["deleted"] = deleted
    logger.info(f"インテント整理: expired={result.count}, deleted={deleted}")
    result.message = (
        f"Marked {result.count} payment intents as expired. Deleted {deleted} old payment intents."
    )
    return result
