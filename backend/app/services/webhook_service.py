"""CloudPayments Webhook 状態機械

署名検証 → ペイロード正規化 → 型付きイベントへの変換 → type別ハンドラ。
ハンドラは Ok / Reject を返し、ルーターがそのまま {"code": n} に変換する。
ゲートウェイは同じ通知を複数回・順不同で送ってくるため、各ハンドラは再適用しても結果が変わらないこと。
"""
import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qsl

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.user import User
from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.schemas.webhook import (
    CheckEvent,
    PayEvent,
    FailEvent,
    RecurrentEvent,
    CancelEvent,
    Ok,
    Reject,
    WebhookResult,
    WebhookParseError,
    parse_webhook_event,
    CODE_MISSING_ACCOUNT,
    CODE_AMOUNT_MISMATCH,
    CODE_REJECTED,
)
from app.services import payment_intents, subscription_service, token_ledger
from app.services.billing_periods import utcnow
from app.services.cloudpayments import CloudPaymentsClient, CloudPaymentsError, to_recurrent_interval
from app.services.plan_catalog import PlanCatalog, PlanTier
from app.core.logging import get_logger

logger = get_logger(__name__)

CANCELLING_RECURRENT_STATUSES = ("Cancelled", "Rejected", "Expired")


# =========================================================
# 入口: 署名・本文
# =========================================================

def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Content-HMAC ヘッダー検証 (定数時間比較)"""
    if not signature or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore"))


def normalize_body(raw_body: bytes, content_type: Optional[str]) -> dict:
    """JSON またはフォーム (x-www-form-urlencoded) の本文をフラットな dict にする"""
    text = raw_body.decode("utf-8", errors="replace")
    if content_type and "application/json" in content_type.lower():
        try:
            parsed = json.loads(text) if text else {}
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return dict(parse_qsl(text, keep_blank_values=True))


# =========================================================
# 冪等性キー
# =========================================================

def _claim_event(db: Session, event_type: str, event_key: str) -> bool:
    """処理権を取得。既に処理済み (または処理中) ならFalse"""
    db.add(ProcessedWebhookEvent(event_type=event_type, event_key=event_key, processed_at=utcnow()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _release_event(db: Session, event_type: str, event_key: str):
    """処理失敗時に処理権を返す (ゲートウェイの再送で再処理できるように)"""
    db.rollback()
    db.query(ProcessedWebhookEvent).filter(
        ProcessedWebhookEvent.event_type == event_type,
        ProcessedWebhookEvent.event_key == event_key,
    ).delete(synchronize_session=False)
    db.commit()


# =========================================================
# 共通ヘルパー
# =========================================================

def _get_user(db: Session, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    return db.query(User).filter(User.id == user_id).first()


def _is_trial_hold(event) -> bool:
    return event.data.is_trial and event.amount == Decimal(settings.TRIAL_HOLD_AMOUNT)


def _is_chargeable(tier: Optional[PlanTier]) -> bool:
    return tier is not None and not tier.is_free_plan and not tier.is_free_tester_plan


def _reset_ledger(db: Session, user_id: int, tier: PlanTier, reason: str, reference_id: Optional[str], subscription_id: int):
    """残高をプランのクォータにリセット。失敗しても購読の変更は取り消さない"""
    try:
        token_ledger.reset_balance(
            db,
            user_id,
            tier.token_quota,
            reason=reason,
            reference_id=reference_id,
            plan_name=tier.name,
            subscription_id=subscription_id,
        )
    except Exception as e:
        logger.error(
            f"残高リセット失敗 (購読は更新済み): user_id={user_id}, plan={tier.name} - {e}",
            extra={"extra_data": {"userId": user_id, "subscriptionId": subscription_id, "reason": reason}},
        )


# =========================================================
# check
# =========================================================

def handle_check(db: Session, catalog: PlanCatalog, event: CheckEvent) -> WebhookResult:
    """決済前の検証。DBは変更しない"""
    user = _get_user(db, event.user_id)
    if user is None:
        logger.warning(f"check: アカウント不明: account_id={event.account_id}")
        return Reject(CODE_MISSING_ACCOUNT, "account not found")

    if _is_trial_hold(event):
        if not user.is_tester:
            logger.warning(f"check: テスター以外のトライアル: user_id={user.id}")
            return Reject(CODE_REJECTED, "trial is available to testers only")
        if user.trial_used_at is not None:
            logger.warning(f"check: トライアル使用済み: user_id={user.id}")
            return Reject(CODE_REJECTED, "trial already used")
        return Ok()

    plan_name = event.data.plan_name
    if not plan_name and event.subscription_id:
        sub = subscription_service.find_by_external_id(db, event.subscription_id)
        if sub is not None and sub.status == "active":
            plan = subscription_service.get_plan(db, sub.plan_id)
            plan_name = plan.name if plan else None
    if not plan_name:
        sub = subscription_service.get_active_subscription(db, user.id)
        if sub is not None:
            plan = subscription_service.get_plan(db, sub.plan_id)
            plan_name = plan.name if plan else None
    if not plan_name:
        logger.warning(f"check: プラン特定不可: user_id={user.id}")
        return Reject(CODE_REJECTED, "plan could not be determined")

    tier = catalog.get(plan_name)
    if not _is_chargeable(tier):
        logger.warning(f"check: 課金不可プラン: plan={plan_name}")
        return Reject(CODE_REJECTED, f"plan is not chargeable: {plan_name}")

    expected = tier.price_in(event.currency)
    if event.amount != expected:
        logger.warning(
            f"check: 金額不一致: plan={plan_name}, currency={event.currency}, expected={expected}, got={event.amount}"
        )
        return Reject(CODE_AMOUNT_MISMATCH, f"amount mismatch: expected {expected}, got {event.amount}")

    return Ok()


# =========================================================
# pay
# =========================================================

def handle_pay(
    db: Session,
    catalog: PlanCatalog,
    gateway: CloudPaymentsClient,
    event: PayEvent,
    now: datetime,
) -> WebhookResult:
    """決済成功: 購読の有効化/延長・インテント確定・残高リセット"""
    user = _get_user(db, event.user_id)
    if user is None:
        logger.warning(f"pay: アカウント不明: account_id={event.account_id}")
        return Reject(CODE_MISSING_ACCOUNT, "account not found")

    if event.transaction_id and payment_intents.find_succeeded_by_transaction(db, event.transaction_id):
        logger.info(f"pay: 処理済みトランザクション: transaction_id={event.transaction_id}")
        return Ok()

    event_key = event.transaction_id
    if event_key and not _claim_event(db, "pay", event_key):
        logger.info(f"pay: 重複スキップ: transaction_id={event_key}")
        return Ok()

    try:
        if _is_trial_hold(event):
            result = _activate_trial(db, catalog, gateway, user, event, now)
        else:
            result = _activate_paid(db, catalog, user, event, now)
    except Exception:
        logger.exception(f"pay: 処理エラー: user_id={user.id}, transaction_id={event.transaction_id}")
        if event_key:
            _release_event(db, "pay", event_key)
        return Reject(CODE_REJECTED, "unexpected error")

    if isinstance(result, Reject) and event_key:
        _release_event(db, "pay", event_key)
    return result


def _activate_paid(db: Session, catalog: PlanCatalog, user: User, event: PayEvent, now: datetime) -> WebhookResult:
    existing = subscription_service.find_by_external_id(db, event.subscription_id) if event.subscription_id else None
    if existing is not None and existing.user_id != user.id:
        logger.error(
            f"pay: 他ユーザーの購読ID: subscription_id={event.subscription_id}, "
            f"owner={existing.user_id}, account={user.id}"
        )
        return Reject(CODE_REJECTED, "subscription belongs to another account")
    if existing is not None:
        return _renew_paid(db, catalog, user, existing, event, now)

    plan_name = event.data.plan_name or settings.DEFAULT_PLAN_NAME
    tier = catalog.get(plan_name)
    if not _is_chargeable(tier):
        logger.warning(f"pay: 課金不可プラン: plan={plan_name}")
        return Reject(CODE_REJECTED, f"plan is not chargeable: {plan_name}")

    plan = subscription_service.get_or_create_plan(db, tier)
    sub = subscription_service.activate_subscription(
        db,
        user.id,
        plan,
        tier,
        now,
        external_subscription_id=event.subscription_id,
        card_token=event.token,
        card_mask=event.card_mask,
        amount=event.amount,
    )
    _resolve_paid_intent(db, user, event)
    _reset_ledger(db, user.id, tier, "payment", event.transaction_id, sub.id)

    logger.info(f"pay: 購読有効化: user_id={user.id}, plan={tier.name}, card={event.card_mask}")
    return Ok()


def _renew_paid(
    db: Session,
    catalog: PlanCatalog,
    user: User,
    existing,
    event: PayEvent,
    now: datetime,
) -> WebhookResult:
    """
    既知の購読への支払い (定期課金の pay 通知、または同じ購読IDでの再購入)。

    Data.planName があり現在のプランと異なる場合のみプラン変更。
    ゲートウェイの定期課金は Data を持たないため、無ければ現在のプランのまま延長する。
    """
    current_plan = subscription_service.get_plan(db, existing.plan_id)
    requested = event.data.plan_name
    plan = tier = None
    if requested and (current_plan is None or requested != current_plan.name):
        tier = catalog.get(requested)
        if not _is_chargeable(tier):
            logger.warning(f"pay: 課金不可プラン: plan={requested}")
            return Reject(CODE_REJECTED, f"plan is not chargeable: {requested}")
        plan = subscription_service.get_or_create_plan(db, tier)

    if plan is None and subscription_service.is_charge_applied(existing, now):
        # 同じ課金の recurrent(Active) が先に届いて延長済み
        logger.info(f"pay: 延長済みの課金: subscription_id={existing.id}, transaction_id={event.transaction_id}")
    else:
        subscription_service.extend_subscription(
            db,
            existing,
            now,
            amount=event.amount,
            plan=plan,
            tier=tier,
            card_token=event.token,
            card_mask=event.card_mask,
        )
    _resolve_paid_intent(db, user, event)

    plan_name = tier.name if tier else (current_plan.name if current_plan else None)
    logger.info(f"pay: 購読延長: user_id={user.id}, plan={plan_name}, card={event.card_mask}")
    return Ok()


def _resolve_paid_intent(db: Session, user: User, event: PayEvent):
    if event.data.session_id:
        payment_intents.resolve_intent(
            db,
            event.data.session_id,
            "succeeded",
            user_id=user.id,
            external_transaction_id=event.transaction_id,
            external_subscription_id=event.subscription_id,
        )


def _activate_trial(
    db: Session,
    catalog: PlanCatalog,
    gateway: CloudPaymentsClient,
    user: User,
    event: PayEvent,
    now: datetime,
) -> WebhookResult:
    """トライアル: 保留額を取り消し、トライアル終了日から始まる定期課金を作成"""
    if not user.is_tester:
        return Reject(CODE_REJECTED, "trial is available to testers only")
    if user.trial_used_at is not None:
        return Reject(CODE_REJECTED, "trial already used")
    if not event.token:
        logger.error(f"pay: トライアルにカードトークンなし: user_id={user.id}")
        return Reject(CODE_REJECTED, "card token is required for trial")

    plan_name = event.data.plan_name or settings.DEFAULT_PLAN_NAME
    tier = catalog.get(plan_name)
    if not _is_chargeable(tier):
        return Reject(CODE_REJECTED, f"plan is not chargeable: {plan_name}")

    if event.transaction_id:
        try:
            gateway.void_payment(event.transaction_id)
        except CloudPaymentsError as e:
            # 保留額は認証のみで自動失効するため続行
            logger.error(f"pay: トライアル保留額の取消失敗: transaction_id={event.transaction_id} - {e}")

    trial_ends_at = now + timedelta(days=settings.TRIAL_DAYS)
    interval, period = to_recurrent_interval(tier.billing_period, tier.billing_period_count)
    gateway_sub = gateway.create_subscription(
        token=event.token,
        account_id=str(user.id),
        description=tier.display_name_ru or tier.display_name,
        amount=tier.price_in(event.currency),
        currency=event.currency,
        start_date=trial_ends_at,
        interval=interval,
        period=period,
        email=event.email or user.email,
    )
    external_id = str(gateway_sub.get("Id") or "") or None

    try:
        plan = subscription_service.get_or_create_plan(db, tier)
        sub = subscription_service.activate_subscription(
            db,
            user.id,
            plan,
            tier,
            now,
            external_subscription_id=external_id,
            card_token=event.token,
            card_mask=event.card_mask,
            amount=event.amount,
            is_trial=True,
            trial_ends_at=trial_ends_at,
        )

        if event.data.session_id:
            payment_intents.resolve_intent(
                db,
                event.data.session_id,
                "succeeded",
                user_id=user.id,
                external_transaction_id=event.transaction_id,
                external_subscription_id=external_id,
            )
    except Exception:
        db.rollback()
        _cancel_orphan_subscription(gateway, external_id, user.id)
        raise

    _reset_ledger(db, user.id, tier, "payment", event.transaction_id, sub.id)
    logger.info(f"pay: トライアル開始: user_id={user.id}, plan={tier.name}, ends={trial_ends_at.isoformat()}")
    return Ok()


def _cancel_orphan_subscription(gateway: CloudPaymentsClient, external_id: Optional[str], user_id: int):
    """ローカルの有効化に失敗した場合、作成済みのゲートウェイ購読を取り消す"""
    if not external_id:
        return
    try:
        gateway.cancel_subscription(external_id)
        logger.warning(f"pay: 有効化失敗のためゲートウェイ購読を取消: user_id={user_id}, id={external_id}")
    except CloudPaymentsError as e:
        logger.error(f"pay: ゲートウェイ購読の取消失敗 (手動対応が必要): user_id={user_id}, id={external_id} - {e}")


# =========================================================
# fail
# =========================================================

def handle_fail(db: Session, event: FailEvent) -> WebhookResult:
    """決済失敗: 購読を past_due に、インテントを failed に。常に受理"""
    logger.info(
        f"fail: 決済失敗: account_id={event.account_id}, reason={event.failure_reason}, "
        f"subscription={event.subscription_id}"
    )

    # SubscriptionId のない通知はアカウントのアクティブ購読に適用
    sub = subscription_service.resolve_subscription(db, event.subscription_id, event.user_id)
    if sub is not None and subscription_service.mark_past_due(db, sub.id):
        logger.info(f"fail: 購読を past_due に変更: subscription_id={sub.id}")

    if event.data.session_id:
        payment_intents.resolve_intent(
            db,
            event.data.session_id,
            "failed",
            user_id=event.user_id,
            external_transaction_id=event.transaction_id,
            failure_reason=event.failure_reason,
        )
    return Ok()


# =========================================================
# recurrent
# =========================================================

def handle_recurrent(db: Session, catalog: PlanCatalog, event: RecurrentEvent, now: datetime) -> WebhookResult:
    """定期課金の状態変化。パース済みなら常に受理"""
    sub = subscription_service.resolve_subscription(db, event.id, event.user_id)
    if sub is None:
        logger.warning(f"recurrent: 購読不明: id={event.id}, account_id={event.account_id}")
        return Ok()

    if event.status == "Active":
        _renew_from_recurrent(db, catalog, sub, event, now)
    elif event.status == "PastDue":
        if subscription_service.mark_past_due(db, sub.id):
            logger.info(f"recurrent: past_due: subscription_id={sub.id}")
    elif event.status in CANCELLING_RECURRENT_STATUSES:
        if subscription_service.schedule_cancellation(db, sub.id, now):
            logger.info(f"recurrent: 期間終了時に解約: subscription_id={sub.id}, status={event.status}")
    else:
        logger.warning(f"recurrent: 未知のステータス: status={event.status}, id={event.id}")
    return Ok()


def _renew_from_recurrent(db: Session, catalog: PlanCatalog, sub, event: RecurrentEvent, now: datetime):
    if sub.status == "cancelled":
        logger.error(f"recurrent: 解約済み購読への課金通知: subscription_id={sub.id}, id={event.id}")
        return

    event_key = f"{event.id}:{event.successful_transactions_number}"
    if not _claim_event(db, "recurrent", event_key):
        logger.info(f"recurrent: 重複スキップ: key={event_key}")
        return

    was_trial = bool(sub.is_trial)
    if subscription_service.is_charge_applied(sub, now):
        # 同じ課金の pay で延長済み。台帳のリセットのみ行う
        logger.info(f"recurrent: 延長済みの課金: subscription_id={sub.id}, key={event_key}")
    else:
        sub = _extend_from_recurrent(db, sub, event, event_key, now)

    if was_trial:
        logger.info(f"recurrent: トライアルから有料へ移行: subscription_id={sub.id}")

    plan = subscription_service.get_plan(db, sub.plan_id)
    tier = catalog.get(plan.name) if plan else None
    if tier is None:
        logger.error(f"recurrent: カタログにないプラン: plan_id={sub.plan_id}")
        return
    _reset_ledger(db, sub.user_id, tier, "subscription_reset", event.id, sub.id)


def _extend_from_recurrent(db: Session, sub, event: RecurrentEvent, event_key: str, now: datetime):
    try:
        return subscription_service.extend_subscription(
            db,
            sub,
            now,
            amount=event.amount,
            clear_trial=True,
            external_subscription_id=event.id,
        )
    except Exception:
        _release_event(db, "recurrent", event_key)
        raise


# =========================================================
# cancel
# =========================================================

def handle_cancel(db: Session, event: CancelEvent, now: datetime) -> WebhookResult:
    """購読IDのある解約通知のみ処理 (決済取消だけの通知は無視)"""
    external_id = event.external_subscription_id
    if not external_id:
        logger.info(f"cancel: 購読IDなし (決済取消) のため無視: transaction_id={event.transaction_id}")
        return Ok()

    sub = subscription_service.find_by_external_id(db, external_id)
    if sub is None:
        logger.warning(f"cancel: 購読不明: id={external_id}")
        return Ok()
    if event.user_id is not None and sub.user_id != event.user_id:
        logger.warning(f"cancel: アカウント不一致: id={external_id}, owner={sub.user_id}, account={event.user_id}")
        return Ok()

    if subscription_service.schedule_cancellation(db, sub.id, now):
        logger.info(f"cancel: 期間終了時に解約: subscription_id={sub.id}")
    return Ok()


# =========================================================
# ディスパッチ
# =========================================================

def dispatch(
    db: Session,
    catalog: PlanCatalog,
    gateway: CloudPaymentsClient,
    event,
    now: Optional[datetime] = None,
) -> WebhookResult:
    now = now or utcnow()
    if isinstance(event, CheckEvent):
        return handle_check(db, catalog, event)
    if isinstance(event, PayEvent):
        return handle_pay(db, catalog, gateway, event, now)
    if isinstance(event, FailEvent):
        return handle_fail(db, event)
    if isinstance(event, RecurrentEvent):
        return handle_recurrent(db, catalog, event, now)
    if isinstance(event, CancelEvent):
        return handle_cancel(db, event, now)
    raise TypeError(f"Unsupported webhook event: {type(event).__name__}")


def process_webhook(
    db: Session,
    catalog: PlanCatalog,
    gateway: CloudPaymentsClient,
    kind: str,
    fields: dict,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """検証済みペイロードを処理。想定外の例外は汎用拒否 (13) に変換"""
    try:
        event = parse_webhook_event(kind, fields)
    except WebhookParseError as e:
        logger.warning(f"Webhookパース失敗: type={kind} - {e}")
        return Reject(CODE_REJECTED, "invalid payload")

    try:
        return dispatch(db, catalog, gateway, event, now)
    except Exception:
        db.rollback()
        logger.exception(f"Webhook処理エラー: type={kind}")
        return Reject(CODE_REJECTED, "unexpected error")
