"""配信監査ログの書き込み (delivery_logs)

ジョブ更新とは別セッションで1件ずつコミットする。
書き込み失敗はプロセスログに残すだけで、配信処理には影響させない。
"""
import logging

from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_log import DeliveryLog

logger = get_logger(__name__)

LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class DeliveryLogWriter:

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def add(self, job_id: int, level: str, step: str, message: str, details: dict = None, duration_ms: int = None):
        logger.log(
            LEVELS.get(level, logging.INFO),
            f"[{step}] job_id={job_id} {message}",
            extra={"extra_data": {"job_id": job_id, "step": step, "details": details}},
        )
        db = self.session_factory()
        try:
            db.add(DeliveryLog(
                job_id=job_id,
                level=level,
                step=step,
                message=message,
                details=details,
                duration_ms=duration_ms,
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"配信ログ書き込み失敗: job_id={job_id}, step={step} - {e}")
        finally:
            db.close()

    def info(self, job_id, step, message, details=None, duration_ms=None):
        self.add(job_id, "info", step, message, details, duration_ms)

    def success(self, job_id, step, message, details=None, duration_ms=None):
        self.add(job_id, "success", step, message, details, duration_ms)

    def warning(self, job_id, step, message, details=None, duration_ms=None):
        self.add(job_id, "warning", step, message, details, duration_ms)

    def error(self, job_id, step, message, details=None, duration_ms=None):
        self.add(job_id, "error", step, message, details, duration_ms)
