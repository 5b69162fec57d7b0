import redis.asyncio as aioredis
import redis as sync_redis
from app.core.config import settings

# 非同期Redis (FastAPI用: セッション参照)
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数: 非同期Redisクライアント取得"""
    return aioredis.Redis(connection_pool=redis_pool)


# 同期Redis (Scheduler用: ハートビート)
sync_redis_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=5,
    decode_responses=True,
)

SCHEDULER_HEARTBEAT_KEY = "billing:scheduler:heartbeat"


def get_sync_redis() -> sync_redis.Redis:
    """同期Redisクライアント取得"""
    return sync_redis.Redis(connection_pool=sync_redis_pool)


async def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False


async def get_scheduler_heartbeat() -> str | None:
    """スケジューラの最終ハートビート (ISO文字列)。未記録ならNone"""
    try:
        r = await get_redis()
        return await r.get(SCHEDULER_HEARTBEAT_KEY)
    except Exception:
        return None
