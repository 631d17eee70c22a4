"""死活監視 (認証なし)"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from ddex_delivery.core.config import settings
from ddex_delivery.core.database import check_db_connection
from ddex_delivery.core.redis import check_redis_connection

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """DBに繋がらなければ503。Redis断は緊急停止フラグが読めないだけなので degraded"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "ok" if (db_ok and redis_ok) else "degraded",
            "env": settings.ENV,
            "db": "connected" if db_ok else "disconnected",
            "redis": "connected" if redis_ok else "disconnected",
        },
    )
