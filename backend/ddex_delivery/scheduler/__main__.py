"""Scheduler エントリポイント: python -m ddex_delivery.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import setup_logging, get_logger
from ddex_delivery.scheduler.watchdog import recover_stalled_jobs
from ddex_delivery.services.lock_manager import LockManager

logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="Asia/Tokyo")


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


def purge_locks():
    """保持期間切れのロック削除"""
    try:
        LockManager().purge_expired()
    except Exception as e:
        logger.error(f"ロック削除エラー: {e}")


def main():
    setup_logging(debug=settings.DEBUG)
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    logger.info("Scheduler起動")

    # 毎分: 停止ジョブ復旧
    scheduler.add_job(
        recover_stalled_jobs,
        CronTrigger(minute="*", timezone="Asia/Tokyo"),
        id="stalled_job_watchdog",
        max_instances=1,
    )

    # 毎時: 期限切れロック削除
    scheduler.add_job(
        purge_locks,
        CronTrigger(minute=5, timezone="Asia/Tokyo"),
        id="lock_purge",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
