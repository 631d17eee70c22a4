"""配信キュー処理"""
from sqlalchemy.orm import Session

from ddex_delivery.core.clock import now_jst
from ddex_delivery.core.config import settings
from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.services.delivery_service import DeliveryOrchestrator, ProcessOutcome
from ddex_delivery.worker.throttle_manager import check_emergency_stop

logger = get_logger(__name__)


def fetch_due_job_ids(db: Session, limit: int, now=None) -> list[int]:
    """
    実行時刻に達した queued ジョブを取得。

    並び順: priority 降順 → scheduled_at 昇順
    """
    now = now or now_jst()
    rows = db.query(DeliveryJob.id).filter(
        DeliveryJob.status == "queued",
        DeliveryJob.scheduled_at <= now,
    ).order_by(
        DeliveryJob.priority.desc(),
        DeliveryJob.scheduled_at.asc(),
    ).limit(limit).all()
    return [r[0] for r in rows]


def process_pending_jobs(
    orchestrator: DeliveryOrchestrator,
    session_factory=SessionLocal,
    batch_size: int = None,
    stop_check=check_emergency_stop,
) -> int:
    """
    キューから1バッチ取得して順に処理する。

    Returns:
        取得したジョブ数 (0ならキューが空)
    """
    if stop_check():
        logger.info("緊急停止中: ジョブ処理スキップ")
        return 0

    db = session_factory()
    try:
        job_ids = fetch_due_job_ids(db, batch_size or settings.WORKER_BATCH_SIZE)
    finally:
        db.close()

    for job_id in job_ids:
        if stop_check():
            logger.info("緊急停止: バッチ処理を中断")
            break
        try:
            result = orchestrator.process_job(job_id)
        except Exception as e:
            logger.error(f"ジョブ処理エラー: job_id={job_id} - {e}")
            continue
        if result.outcome == ProcessOutcome.LOCKED:
            logger.info(f"他Workerが処理中: job_id={job_id}")
        else:
            logger.info(f"ジョブ処理結果: job_id={job_id}, outcome={result.outcome.value}")

    return len(job_ids)
