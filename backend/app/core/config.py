from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/billing?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # CloudPayments
    CLOUDPAYMENTS_PUBLIC_ID: str = ""
    CLOUDPAYMENTS_API_SECRET: str = ""
    CLOUDPAYMENTS_API_URL: str = "https://api.cloudpayments.ru"
    CLOUDPAYMENTS_TIMEOUT_SECONDS: float = 15.0

    # Cron (Bearer認証)
    CRON_SECRET: str = ""

    # プランカタログ (未指定なら組み込みカタログ)
    PLAN_CATALOG_PATH: Optional[str] = None
    FREE_PLAN_NAME: str = "free"
    DEFAULT_PLAN_NAME: str = "basic_monthly"

    # 決済インテント
    PAYMENT_INTENT_TTL_MINUTES: int = 30
    PAYMENT_INTENT_RETENTION_DAYS: int = 30
    PAYMENT_STATUS_RATE_LIMIT: str = "30/minute"

    # トライアル
    TRIAL_DAYS: int = 3
    TRIAL_HOLD_AMOUNT: int = 1

    # レート制限ストレージ (本番ではRedis推奨)
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # セッション
    SESSION_TIMEOUT_MINUTES: int = 60

    # スケジューラ
    SCHEDULER_TIMEZONE: str = "UTC"

    # サービス設定
    SITE_NAME: str = "Billing Service"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
