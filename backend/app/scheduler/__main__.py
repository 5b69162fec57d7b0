"""Scheduler エントリポイント: python -m app.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.redis import get_sync_redis, SCHEDULER_HEARTBEAT_KEY
from app.services.billing_periods import utcnow
from app.services.plan_catalog import load_plan_catalog
from app.scheduler.quota_reset import reset_quotas_job
from app.scheduler.trial_cleaner import cleanup_expired_trials_job
from app.scheduler.cancellation_cleaner import cleanup_cancelled_job
from app.scheduler.intent_cleaner import cleanup_payment_intents_job

setup_logging(debug=settings.DEBUG)
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone=settings.SCHEDULER_TIMEZONE)


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def heartbeat():
    """ヘルスチェック用に最終実行時刻を Redis に記録"""
    try:
        get_sync_redis().set(SCHEDULER_HEARTBEAT_KEY, utcnow().isoformat() + "Z")
    except Exception as e:
        logger.error(f"ハートビート記録失敗: {e}")


def main():
    logger.info("Scheduler起動")
    catalog = load_plan_catalog(settings.PLAN_CATALOG_PATH, settings.FREE_PLAN_NAME)
    tz = settings.SCHEDULER_TIMEZONE

    # 毎時: 期間更新 (ゲートウェイ連携なし)
    scheduler.add_job(
        reset_quotas_job,
        CronTrigger(minute=0, timezone=tz),
        id="reset_quotas",
        max_instances=1,
    )

    # 毎時: トライアル終了
    scheduler.add_job(
        cleanup_expired_trials_job,
        CronTrigger(minute=10, timezone=tz),
        id="cleanup_expired_trials",
        max_instances=1,
    )

    # 毎時: 解約確定
    scheduler.add_job(
        cleanup_cancelled_job,
        CronTrigger(minute=20, timezone=tz),
        id="cleanup_cancelled",
        args=[catalog],
        max_instances=1,
    )

    # 毎時: インテント整理
    scheduler.add_job(
        cleanup_payment_intents_job,
        CronTrigger(minute=30, timezone=tz),
        id="cleanup_payment_intents",
        max_instances=1,
    )

    # 毎分: ハートビート
    scheduler.add_job(
        heartbeat,
        CronTrigger(minute="*", timezone=tz),
        id="heartbeat",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
