"""毎時: 期限切れトライアルの終了"""
from app.core.database import SessionLocal
from app.services import reconciliation
from app.core.logging import get_logger

logger = get_logger(__name__)


def cleanup_expired_trials_job():
    db = SessionLocal()
    try:
        result = reconciliation.cleanup_expired_trials(db)
        logger.info(f"トライアル終了処理完了: converted={result.count}, failed={result.failed}")
    except Exception as e:
        logger.error(f"トライアル終了ジョブエラー: {e}")
        db.rollback()
    finally:
        db.close()
