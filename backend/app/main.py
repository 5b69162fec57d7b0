from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.routers import health, payments, cron, webhooks_cloudpayments
from app.services.plan_catalog import load_plan_catalog

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    app.state.plan_catalog = load_plan_catalog(settings.PLAN_CATALOG_PATH, settings.FREE_PLAN_NAME)
    logger.info("アプリケーション起動")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(payments.router)
app.include_router(webhooks_cloudpayments.router)
app.include_router(cron.router)
