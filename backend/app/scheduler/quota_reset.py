"""毎時: ゲートウェイ連携のない購読の期間更新"""
from app.core.database import SessionLocal
from app.services import reconciliation
from app.core.logging import get_logger

logger = get_logger(__name__)


def reset_quotas_job():
    db = SessionLocal()
    try:
        result = reconciliation.reset_quotas(db)
        logger.info(f"期間更新完了: renewed={result.count}, failed={result.failed}")
    except Exception as e:
        logger.error(f"期間更新ジョブエラー: {e}")
        db.rollback()
    finally:
        db.close()
