# 全モデルをインポート (Alembic autogenerate / create_all 用)
from ddex_delivery.models.delivery_target import DeliveryTarget
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_attempt import DeliveryAttempt
from ddex_delivery.models.delivery_log import DeliveryLog
from ddex_delivery.models.delivery_lock import DeliveryLock
from ddex_delivery.models.delivery_history import DeliveryHistory
from ddex_delivery.models.notification import Notification

__all__ = [
    "DeliveryTarget",
    "DeliveryJob",
    "DeliveryAttempt",
    "DeliveryLog",
    "DeliveryLock",
    "DeliveryHistory",
    "Notification",
]
