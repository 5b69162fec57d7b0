"""毎時: 期間終了した解約予約の確定 (無料プランへ戻す)"""
from app.core.database import SessionLocal
from app.services import reconciliation
from app.services.plan_catalog import PlanCatalog
from app.core.logging import get_logger

logger = get_logger(__name__)


def cleanup_cancelled_job(catalog: PlanCatalog):
    db = SessionLocal()
    try:
        result = reconciliation.cleanup_cancelled(db, catalog.free_plan_name)
        logger.info(f"解約確定完了: cleaned={result.count}, failed={result.failed}")
    except Exception as e:
        logger.error(f"解約確定ジョブエラー: {e}")
        db.rollback()
    finally:
        db.close()
