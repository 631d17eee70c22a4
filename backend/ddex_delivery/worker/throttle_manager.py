"""Worker制御フラグ (Redis)"""
from ddex_delivery.core.redis import get_sync_redis
from ddex_delivery.core.logging import get_logger

logger = get_logger(__name__)

EMERGENCY_STOP_KEY = "ddex_delivery:emergency_stop"


def check_emergency_stop() -> bool:
    """緊急停止フラグチェック"""
    redis = get_sync_redis()
    return bool(redis.get(EMERGENCY_STOP_KEY))


def set_emergency_stop(active: bool):
    """緊急停止フラグ設定"""
    redis = get_sync_redis()
    if active:
        redis.set(EMERGENCY_STOP_KEY, "1")
        logger.warning("緊急停止フラグ設定")
    else:
        redis.delete(EMERGENCY_STOP_KEY)
        logger.info("緊急停止フラグ解除")
