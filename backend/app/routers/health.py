from fastapi import APIRouter
from app.core.database import check_db_connection
from app.core.redis import check_redis_connection, get_scheduler_heartbeat

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェック (DB・Redis・スケジューラの最終実行)"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()
    heartbeat = await get_scheduler_heartbeat() if redis_ok else None

    return {
        "status": "ok" if (db_ok and redis_ok) else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "scheduler_last_run": heartbeat,
    }
