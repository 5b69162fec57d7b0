"""レート制限設定（slowapi使用）"""
import math
import time

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import settings


def get_client_ip(request: Request) -> str:
    """
    クライアントIPアドレスを取得
    プロキシ経由の場合はX-Forwarded-For / X-Real-IPヘッダーを参照
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # カンマ区切りの最初のIPを取得
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return get_remote_address(request) or "unknown"


# Limiterインスタンス（アプリケーション全体で共有）
limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


def _retry_after_seconds(request: Request) -> int:
    """現在のウィンドウがリセットされるまでの秒数 (取得できなければ60秒)"""
    view_limit = getattr(request.state, "view_rate_limit", None)
    if view_limit:
        try:
            reset_at, _remaining = limiter.limiter.get_window_stats(view_limit[0], *view_limit[1])
            return max(1, math.ceil(reset_at - time.time()))
        except Exception:
            pass
    return 60


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    レート制限超過時のカスタムエラーハンドラ
    決済失敗と誤認されないよう、再試行までの待機時間を返す
    """
    retry_after = _retry_after_seconds(request)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests. Please try again later.",
            "retryAfter": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


# エンドポイント別のレート制限定義
PAYMENT_STATUS_RATE_LIMIT = settings.PAYMENT_STATUS_RATE_LIMIT   # 決済ステータスポーリング
PAYMENT_INTENT_RATE_LIMIT = "10/minute"                          # インテント作成
