"""Redis接続 (Worker制御フラグ・ヘルスチェック)

レート制限のカウンタは slowapi が RATE_LIMIT_STORAGE_URI へ直接接続する。
"""
import redis
import redis.asyncio as aioredis
from ddex_delivery.core.config import settings

# Worker / 管理API の制御フラグ用。接続は初回コマンド時に張られる
_pool = redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=10,
    decode_responses=True,
    socket_connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
    socket_timeout=settings.CONNECT_TIMEOUT_SECONDS,
)


def get_sync_redis() -> redis.Redis:
    return redis.Redis(connection_pool=_pool)


async def check_redis_connection() -> bool:
    """疎通確認 (都度接続して閉じる)"""
    client = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=settings.CONNECT_TIMEOUT_SECONDS)
    try:
        await client.ping()
        return True
    except Exception:
        return False
    finally:
        await client.aclose()
