"""Watchdog: Worker停止で processing のまま残ったジョブの復旧

検出条件:
- status=processing で、冪等ロックが期限切れ (または存在しない)

復旧アクション:
- 試行記録を1件追加し、リトライ上限未満なら queued に戻す (即時実行)
- 上限到達なら failed にして通知
"""
from sqlalchemy import func

from ddex_delivery.core.clock import now_jst
from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_attempt import DeliveryAttempt
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_lock import DeliveryLock
from ddex_delivery.services.delivery_log import DeliveryLogWriter
from ddex_delivery.services.errors import PermanentFailure
from ddex_delivery.services.notification_service import DatabaseNotificationSink
from ddex_delivery.services.retry_policy import RetryPolicy

logger = get_logger(__name__)

STALL_ERROR = "Worker stopped while processing (lock expired)"


def recover_stalled_jobs(session_factory=SessionLocal, retry_policy: RetryPolicy = None, clock=now_jst, notification_sink=None) -> int:
    retry_policy = retry_policy or RetryPolicy()
    sink = notification_sink or DatabaseNotificationSink(session_factory)
    log = DeliveryLogWriter(session_factory)
    db = session_factory()
    recovered = 0
    try:
        now = clock()
        jobs = db.query(DeliveryJob).filter(DeliveryJob.status == "processing").all()
        for job in jobs:
            lock = db.get(DeliveryLock, job.idempotency_key)
            if lock is not None and lock.status == "processing" and lock.expires_at > now:
                continue  # 実行中

            attempt_number = (db.query(func.count(DeliveryAttempt.id)).filter(
                DeliveryAttempt.job_id == job.id,
                DeliveryAttempt.round == job.redelivery_round,
            ).scalar() or 0) + 1
            db.add(DeliveryAttempt(
                job_id=job.id,
                round=job.redelivery_round,
                attempt_number=attempt_number,
                status="failed",
                error=STALL_ERROR,
                error_type="WorkerLost",
                start_time=job.started_at or now,
                end_time=now,
            ))

            if retry_policy.next_delay(attempt_number) is not None:
                job.status = "queued"
                job.scheduled_at = now
                job.last_error = STALL_ERROR
                job.updated_at = now
                db.commit()
                logger.warning(f"停止ジョブ検出→再キュー: job_id={job.id}, attempt={attempt_number}")
                log.warning(job.id, "watchdog", f"Recovered stalled delivery; requeued (attempt {attempt_number})")
            else:
                final_error = str(PermanentFailure(attempt_number, STALL_ERROR))
                job.status = "failed"
                job.failed_at = now
                job.error = final_error
                job.last_error = STALL_ERROR
                job.updated_at = now
                db.commit()
                logger.error(f"停止ジョブ検出→リトライ上限: job_id={job.id}, attempt={attempt_number}")
                log.error(job.id, "watchdog", "Stalled delivery exceeded max attempts", {"attempts": attempt_number})
                try:
                    sink.send(job, "failed", {"error": final_error, "attempts": attempt_number})
                except Exception as alert_err:
                    logger.error(f"Watchdog通知送信失敗: {alert_err}")
            recovered += 1

        if recovered:
            logger.info(f"Watchdog: {recovered}件の停止ジョブを処理")
        return recovered
    except Exception as e:
        db.rollback()
        logger.error(f"Watchdogエラー: {e}")
        return recovered
    finally:
        db.close()
