"""購読ライフサイクル

状態遷移はすべて「期待する直前状態」を条件にした UPDATE で行い、
Webhook再送や同時実行されたスイープと競合しても二重適用されないようにする。
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.models.user import User
from app.models.subscription_plan import SubscriptionPlan
from app.models.subscription import UserSubscription
from app.services.plan_catalog import PlanTier
from app.services.billing_periods import (
    calculate_period_end,
    calculate_next_billing_date,
    renewal_anchor,
    get_period_duration_days,
)
from app.core.logging import get_logger

logger = get_logger(__name__)

# 周回遅れの期間を追いつかせる際の上限 (日次プランで約1年分)
MAX_CATCH_UP_PERIODS = 400


# =========================================================
# 参照
# =========================================================

def get_active_subscription(db: Session, user_id: int) -> Optional[UserSubscription]:
    """アクティブな購読 (通常1件。複数あれば最新)"""
    return db.query(UserSubscription).filter(
        UserSubscription.user_id == user_id,
        UserSubscription.status == "active",
    ).order_by(
        UserSubscription.current_period_end.desc(),
        UserSubscription.id.desc(),
    ).first()


def count_active_subscriptions(db: Session, user_id: int) -> int:
    return db.query(UserSubscription).filter(
        UserSubscription.user_id == user_id,
        UserSubscription.status == "active",
    ).count()


def find_by_external_id(db: Session, external_subscription_id: str) -> Optional[UserSubscription]:
    if not external_subscription_id:
        return None
    return db.query(UserSubscription).filter(
        UserSubscription.external_subscription_id == external_subscription_id,
    ).first()


def resolve_subscription(
    db: Session,
    external_subscription_id: Optional[str],
    user_id: Optional[int],
) -> Optional[UserSubscription]:
    """
    ゲートウェイ購読ID → 見つからなければアカウントIDでアクティブ購読を引く。

    アカウントID経由の場合、外部IDが記録されていない過去の購読が複数あると
    意図しない行に当たる可能性がある (最新のアクティブ行を採用し警告を出す)。
    """
    sub = find_by_external_id(db, external_subscription_id) if external_subscription_id else None
    if sub is not None:
        return sub
    if user_id is None:
        return None

    sub = get_active_subscription(db, user_id)
    if sub is not None:
        logger.warning(
            f"購読をアカウントIDで解決: user_id={user_id}, "
            f"external_id={external_subscription_id}, subscription_id={sub.id}"
        )
    return sub


def get_plan(db: Session, plan_id: int) -> Optional[SubscriptionPlan]:
    return db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()


def get_or_create_plan(db: Session, tier: PlanTier) -> SubscriptionPlan:
    """プラン行を取得。無ければカタログから作成 (flushのみ、commitは呼び出し側)"""
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.name == tier.name).first()
    if plan:
        return plan

    plan = SubscriptionPlan(
        name=tier.name,
        display_name=tier.display_name,
        billing_period=tier.billing_period,
        billing_period_count=tier.billing_period_count,
        token_quota=tier.token_quota,
        features=dict(tier.features),
        price=tier.price.USD,
        is_tester_plan=tier.is_tester_plan,
    )
    db.add(plan)
    db.flush()
    logger.info(f"プラン自動作成: name={tier.name}, plan_id={plan.id}")
    return plan


# =========================================================
# 作成・延長
# =========================================================

def activate_subscription(
    db: Session,
    user_id: int,
    plan: SubscriptionPlan,
    tier: PlanTier,
    now: datetime,
    external_subscription_id: Optional[str] = None,
    card_token: Optional[str] = None,
    card_mask: Optional[str] = None,
    amount: Optional[Decimal] = None,
    is_trial: bool = False,
    trial_ends_at: Optional[datetime] = None,
) -> UserSubscription:
    """
    新規購読を有効化する。

    同一ユーザーの既存アクティブ購読のキャンセル・新規行の作成・current_plan更新を
    1トランザクションでコミットする (アクティブが0件/2件になる瞬間を作らない)。
    """
    # ユーザー単位で直列化
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if user is None:
        raise ValueError(f"User not found: {user_id}")

    try:
        cancelled = db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
            UserSubscription.status == "active",
        ).update(
            {"status": "cancelled", "cancelled_at": now},
            synchronize_session="fetch",
        )
        if cancelled:
            logger.info(f"既存購読をキャンセル: user_id={user_id}, count={cancelled}")

        if is_trial:
            period_end = trial_ends_at
            next_billing = trial_ends_at
        else:
            period_end = calculate_period_end(now, tier.billing_period, tier.billing_period_count)
            next_billing = calculate_next_billing_date(now, tier.billing_period, tier.billing_period_count)

        sub = UserSubscription(
            user_id=user_id,
            plan_id=plan.id,
            billing_period=tier.billing_period,
            billing_period_count=tier.billing_period_count,
            current_period_start=now,
            current_period_end=period_end,
            next_billing_date=next_billing,
            status="active",
            cancel_at_period_end=False,
            is_trial=is_trial,
            trial_ends_at=trial_ends_at if is_trial else None,
            external_subscription_id=external_subscription_id,
            card_token=card_token,
            card_mask=card_mask,
            last_payment_date=now,
            last_payment_amount=amount,
        )
        db.add(sub)
        user.current_plan = tier.name
        if is_trial:
            user.trial_used_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(sub)
    logger.info(
        f"購読有効化: user_id={user_id}, plan={tier.name}, subscription_id={sub.id}, trial={is_trial}"
    )
    return sub


def extend_subscription(
    db: Session,
    sub: UserSubscription,
    now: datetime,
    amount: Optional[Decimal] = None,
    plan: Optional[SubscriptionPlan] = None,
    tier: Optional[PlanTier] = None,
    card_token: Optional[str] = None,
    card_mask: Optional[str] = None,
    clear_trial: bool = True,
    external_subscription_id: Optional[str] = None,
) -> UserSubscription:
    """
    支払い確認による期間延長。

    新しい期間の開始は max(既存の期間終了, now)。遅延配信でも期間が縮んだり重なったりしない。
    plan/tier を渡すとプラン変更 (アップグレード/ダウングレード) として扱う。
    同一ユーザーの他のアクティブ購読は同じトランザクションでキャンセルする。
    """
    others = db.query(UserSubscription).filter(
        UserSubscription.user_id == sub.user_id,
        UserSubscription.status == "active",
        UserSubscription.id != sub.id,
    ).update({"status": "cancelled", "cancelled_at": now}, synchronize_session="fetch")
    if others:
        logger.info(f"既存購読をキャンセル: user_id={sub.user_id}, count={others}")

    if external_subscription_id and not sub.external_subscription_id:
        sub.external_subscription_id = external_subscription_id

    if plan is not None and tier is not None:
        if sub.plan_id != plan.id:
            logger.info(f"購読プラン変更: subscription_id={sub.id}, plan_id {sub.plan_id} -> {plan.id}")
        sub.plan_id = plan.id
        sub.billing_period = tier.billing_period
        sub.billing_period_count = tier.billing_period_count

    start = renewal_anchor(sub.current_period_end, now)
    sub.current_period_start = start
    sub.current_period_end = calculate_period_end(start, sub.billing_period, sub.billing_period_count)
    sub.next_billing_date = calculate_next_billing_date(start, sub.billing_period, sub.billing_period_count)
    sub.status = "active"
    sub.cancel_at_period_end = False
    sub.cancelled_at = None
    sub.last_payment_date = now
    if amount is not None:
        sub.last_payment_amount = amount
    if card_token:
        sub.card_token = card_token
    if card_mask:
        sub.card_mask = card_mask
    if clear_trial:
        sub.is_trial = False

    if tier is not None:
        user = db.query(User).filter(User.id == sub.user_id).first()
        if user is not None:
            user.current_plan = tier.name

    db.commit()
    db.refresh(sub)
    logger.info(
        f"購読延長: subscription_id={sub.id}, period={sub.current_period_start.isoformat()}"
        f" - {sub.current_period_end.isoformat()}"
    )
    return sub


def is_charge_applied(sub: UserSubscription, now: datetime) -> bool:
    """
    同じ課金による延長が既に適用済みか。

    1回の定期課金は pay と recurrent(Active) の2通で届き、順序も保証されない。
    直近の支払い記録が請求期間の半分より新しければ同一課金とみなす。
    トライアル中の支払い記録はカード認証の保留額なので対象外。
    """
    if sub.is_trial or sub.last_payment_date is None:
        return False
    half_period = timedelta(days=get_period_duration_days(sub.billing_period, sub.billing_period_count) / 2)
    return now - sub.last_payment_date < half_period


# =========================================================
# 状態遷移 (条件付きUPDATE。遷移した場合のみTrue)
# =========================================================

def mark_past_due(db: Session, subscription_id: int) -> bool:
    """active → past_due"""
    updated = db.query(UserSubscription).filter(
        UserSubscription.id == subscription_id,
        UserSubscription.status == "active",
    ).update({"status": "past_due"}, synchronize_session="fetch")
    db.commit()
    return updated > 0


def schedule_cancellation(db: Session, subscription_id: int, now: datetime) -> bool:
    """期間終了時解約の予約。status / current_plan は変更しない (期間終了までアクセス継続)"""
    updated = db.query(UserSubscription).filter(
        UserSubscription.id == subscription_id,
        UserSubscription.status != "cancelled",
        UserSubscription.cancel_at_period_end == False,  # noqa: E712
    ).update(
        {"cancel_at_period_end": True, "cancelled_at": now},
        synchronize_session="fetch",
    )
    db.commit()
    return updated > 0


def finalize_cancellation(
    db: Session,
    sub: UserSubscription,
    free_plan_name: str,
    now: datetime,
) -> bool:
    """
    解約予約済みで期間終了した購読を cancelled にし、ユーザーを無料プランへ戻す。
    他にアクティブ購読 (再加入) がある場合はプランを変更しない。
    """
    updated = db.query(UserSubscription).filter(
        UserSubscription.id == sub.id,
        UserSubscription.cancel_at_period_end == True,  # noqa: E712
        UserSubscription.status != "cancelled",
        UserSubscription.current_period_end <= now,
    ).update({"status": "cancelled"}, synchronize_session="fetch")
    if not updated:
        db.rollback()
        return False

    if count_active_subscriptions(db, sub.user_id) == 0:
        db.query(User).filter(User.id == sub.user_id).update(
            {"current_plan": free_plan_name}, synchronize_session="fetch",
        )
    else:
        logger.info(f"別のアクティブ購読があるためプラン維持: user_id={sub.user_id}")
    db.commit()
    return True


def end_trial(db: Session, subscription_id: int) -> bool:
    """トライアルフラグを下ろす (通常の有料期間へ)"""
    updated = db.query(UserSubscription).filter(
        UserSubscription.id == subscription_id,
        UserSubscription.is_trial == True,  # noqa: E712
        UserSubscription.status == "active",
    ).update({"is_trial": False}, synchronize_session="fetch")
    db.commit()
    return updated > 0


def advance_lapsed_period(db: Session, sub: UserSubscription, now: datetime) -> Optional[datetime]:
    """
    期間終了を過ぎたアクティブ購読の期間を、now を越えるまで前進させる。
    直前に読んだ期間終了を条件に更新するため、同時に延長された行は上書きしない。
    戻り値は新しい期間終了 (更新しなかった場合None)。
    """
    observed_end = sub.current_period_end
    start = observed_end
    end = calculate_period_end(start, sub.billing_period, sub.billing_period_count)
    periods = 1
    while end <= now and periods < MAX_CATCH_UP_PERIODS:
        start = end
        end = calculate_period_end(start, sub.billing_period, sub.billing_period_count)
        periods += 1

    updated = db.query(UserSubscription).filter(
        UserSubscription.id == sub.id,
        UserSubscription.status == "active",
        UserSubscription.current_period_end == observed_end,
    ).update(
        {
            "current_period_start": start,
            "current_period_end": end,
            "next_billing_date": calculate_next_billing_date(start, sub.billing_period, sub.billing_period_count),
        },
        synchronize_session="fetch",
    )
    db.commit()
    return end if updated else None
