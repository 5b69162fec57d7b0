"""CloudPayments Webhook ルーター"""
from typing import Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.routers.deps import get_catalog, get_gateway
from app.schemas.webhook import WEBHOOK_TYPES, CODE_REJECTED, Reject
from app.services import webhook_service
from app.services.cloudpayments import CloudPaymentsClient
from app.services.plan_catalog import PlanCatalog
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/cloudpayments")
async def cloudpayments_webhook(
    request: Request,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
    gateway: CloudPaymentsClient = Depends(get_gateway),
):
    """CloudPayments 通知エンドポイント (Content-HMAC 署名検証)"""
    if type not in WEBHOOK_TYPES:
        logger.warning(f"CloudPayments webhook: 不正なtype: {type}")
        return JSONResponse(status_code=400, content={"error": "Invalid webhook type"})

    raw_body = await request.body()
    signature = request.headers.get("Content-HMAC") or request.headers.get("X-Content-HMAC")
    if not webhook_service.verify_signature(raw_body, signature, settings.CLOUDPAYMENTS_API_SECRET):
        # 署名不一致のペイロードは記録しない
        logger.error(f"CloudPayments webhook署名検証失敗: type={type}")
        return JSONResponse(status_code=401, content={"code": CODE_REJECTED})

    fields = webhook_service.normalize_body(raw_body, request.headers.get("content-type"))
    result = webhook_service.process_webhook(db, catalog, gateway, type, fields)

    if isinstance(result, Reject):
        logger.info(f"CloudPayments webhook拒否: type={type}, code={result.code}, reason={result.reason}")
    return {"code": result.code}
