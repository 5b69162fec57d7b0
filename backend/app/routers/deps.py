"""共通依存関数: セッション参照・Cron認証・カタログ/ゲートウェイ注入"""
import hmac
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.redis import get_redis
from app.core.session import get_session
from app.models.user import User
from app.services.cloudpayments import CloudPaymentsClient, get_cloudpayments_client
from app.services.plan_catalog import PlanCatalog


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[User]:
    """Cookie → Redis → DB でユーザー取得。未ログインならNone"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None

    session_data = await get_session(r, session_id)
    if not session_data:
        return None

    try:
        user_id = int(session_data.get("user_id", 0))
    except (TypeError, ValueError):
        return None
    if not user_id:
        return None

    return db.query(User).filter(User.id == user_id).first()


async def require_login(
    user: Optional[User] = Depends(get_current_user),
) -> User:
    """ログイン必須。未ログインなら401"""
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def require_cron_secret(request: Request):
    """Authorization: Bearer <CRON_SECRET>。未設定・不一致なら401"""
    expected = settings.CRON_SECRET
    header = request.headers.get("authorization", "")
    if not expected or not hmac.compare_digest(header.encode(), f"Bearer {expected}".encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_catalog(request: Request) -> PlanCatalog:
    """起動時に読み込んだプランカタログ"""
    return request.app.state.plan_catalog


def get_gateway() -> CloudPaymentsClient:
    return get_cloudpayments_client()
