"""Cron エンドポイント (外部スケジューラ用。Bearer CRON_SECRET 認証)"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.routers.deps import require_cron_secret, get_catalog
from app.services import reconciliation
from app.services.plan_catalog import PlanCatalog
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.get("/reset-quotas")
def reset_quotas(db: Session = Depends(get_db)):
    result = reconciliation.reset_quotas(db)
    logger.info(f"[Cron] reset-quotas: renewed={result.count}, failed={result.failed}")
    return result.as_response()


@router.get("/cleanup-expired-trials")
def cleanup_expired_trials(db: Session = Depends(get_db)):
    result = reconciliation.cleanup_expired_trials(db)
    logger.info(f"[Cron] cleanup-expired-trials: converted={result.count}, failed={result.failed}")
    return result.as_response()


@router.get("/cleanup-cancelled")
def cleanup_cancelled(db: Session = Depends(get_db), catalog: PlanCatalog = Depends(get_catalog)):
    result = reconciliation.cleanup_cancelled(db, catalog.free_plan_name)
    logger.info(f"[Cron] cleanup-cancelled: cleaned={result.count}, failed={result.failed}")
    return result.as_response()


@router.get("/cleanup-payment-intents")
def cleanup_payment_intents(db: Session = Depends(get_db)):
    result = reconciliation.cleanup_payment_intents(db)
    logger.info(f"[Cron] cleanup-payment-intents: expired={result.count}, deleted={result.extra['deleted']}")
    return result.as_response()
