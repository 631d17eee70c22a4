"""Worker エントリポイント: python -m ddex_delivery.worker で起動"""
import time
import signal
from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import setup_logging, get_logger
from ddex_delivery.services.delivery_service import build_orchestrator
from ddex_delivery.worker.task_processor import process_pending_jobs
from ddex_delivery.worker.throttle_manager import check_emergency_stop

logger = get_logger("worker")

running = True


def signal_handler(sig, frame):
    global running
    logger.info("Worker停止シグナル受信")
    running = False


def main():
    setup_logging(debug=settings.DEBUG)
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    orchestrator = build_orchestrator()
    logger.info(f"Worker起動: instance_id={settings.instance_id}")
    while running:
        try:
            if check_emergency_stop():
                logger.debug("緊急停止中: 待機")
                time.sleep(10)
                continue

            fetched = process_pending_jobs(orchestrator)
            if not fetched:
                time.sleep(settings.WORKER_POLL_SECONDS)
        except Exception as e:
            logger.error(f"Workerループエラー: {e}")
            time.sleep(10)

    logger.info("Worker終了")


if __name__ == "__main__":
    main()
