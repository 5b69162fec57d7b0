"""毎時: 決済インテントの期限切れ・古いレコード削除"""
from app.core.database import SessionLocal
from app.services import reconciliation
from app.core.logging import get_logger

logger = get_logger(__name__)


def cleanup_payment_intents_job():
    db = SessionLocal()
    try:
        result = reconciliation.cleanup_payment_intents(db)
        logger.info(f"インテント整理完了: expired={result.count}, deleted={result.extra.get('deleted', 0)}")
    except Exception as e:
        logger.error(f"インテント整理ジョブエラー: {e}")
        db.rollback()
    finally:
        db.close()
