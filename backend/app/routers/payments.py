"""決済インテント ルーター (チェックアウト開始・ステータスポーリング)"""
from fastapi import APIRouter, Request, HTTPException, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.rate_limit import limiter, get_client_ip, PAYMENT_INTENT_RATE_LIMIT, PAYMENT_STATUS_RATE_LIMIT
from app.models.user import User
from app.routers.deps import require_login, get_catalog
from app.schemas.payment import CreateIntentRequest, PaymentIntentResponse, PaymentStatusResponse
from app.services import payment_intents
from app.services.payment_intents import UnknownPlanError, TrialAlreadyUsedError, IntentNotFoundError
from app.services.plan_catalog import PlanCatalog

router = APIRouter(prefix="/api/payment", tags=["payment"])


def _create(request: Request, req: CreateIntentRequest, db: Session, user: User, catalog: PlanCatalog, is_trial: bool):
    try:
        intent = payment_intents.create_intent(
            db,
            catalog,
            user,
            req.plan_name,
            is_trial=is_trial,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except UnknownPlanError:
        raise HTTPException(status_code=400, detail="Invalid plan")
    except TrialAlreadyUsedError:
        raise HTTPException(status_code=409, detail="Trial already used")
    return PaymentIntentResponse(session_id=intent.session_id, expires_at=intent.expires_at)


@router.post("/create-intent", response_model=PaymentIntentResponse)
@limiter.limit(PAYMENT_INTENT_RATE_LIMIT)
async def create_payment_intent(
    request: Request,
    req: CreateIntentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_login),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """有料プランのチェックアウト開始"""
    return _create(request, req, db, user, catalog, is_trial=False)


@router.post("/create-trial-intent", response_model=PaymentIntentResponse)
@limiter.limit(PAYMENT_INTENT_RATE_LIMIT)
async def create_trial_payment_intent(
    request: Request,
    req: CreateIntentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_login),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """トライアルのチェックアウト開始 (カード認証用の保留額のみ)"""
    if not user.is_tester:
        raise HTTPException(status_code=403, detail="Trial is not available")
    return _create(request, req, db, user, catalog, is_trial=True)


@router.get("/status", response_model=PaymentStatusResponse, response_model_exclude_none=True)
@limiter.limit(PAYMENT_STATUS_RATE_LIMIT)
async def get_payment_status(
    request: Request,
    session_id: str = Query(alias="sessionId", min_length=1),
    db: Session = Depends(get_db),
    user: User = Depends(require_login),
):
    """決済ステータスのポーリング"""
    try:
        status = payment_intents.get_intent_status(db, session_id, user.id)
    except IntentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment session not found")
    return PaymentStatusResponse(
        status=status.status,
        subscription=status.subscription,
        failure_reason=status.failure_reason,
    )
