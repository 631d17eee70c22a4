"""配信結果通知

オーケストレーターは NotificationSink を構築時に受け取る。
既定の実装は notifications テーブルへの記録のみで、メール等への展開は外部に任せる。
"""
from typing import Protocol

from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.notification import Notification

logger = get_logger(__name__)

NOTIFICATION_TYPES = ("success", "retry", "failed")


class NotificationSink(Protocol):
    def send(self, job, notification_type: str, data: dict) -> None:
        ...


class DatabaseNotificationSink:

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def send(self, job, notification_type: str, data: dict) -> None:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {notification_type}")
        db = self.session_factory()
        try:
            db.add(Notification(
                job_id=job.id,
                type=notification_type,
                release_id=job.release_id,
                target_name=data.get("targetName"),
                tenant_id=job.tenant_id,
                data=data,
            ))
            db.commit()
            logger.info(f"配信通知記録: job_id={job.id}, type={notification_type}")
        finally:
            db.close()
