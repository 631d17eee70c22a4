"""レート制限設定（slowapi使用、Redisバックエンド）

プロセス内カウンタではなく共有ストアで数えるため、
APIを複数インスタンスで動かしても上限は全体で共有される。
"""
import hashlib
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from ddex_delivery.core.config import settings

API_KEY_HEADER = "X-API-Key"


def get_client_ip(request: Request) -> str:
    """
    クライアントIPアドレスを取得
    プロキシ経由の場合はX-Forwarded-Forヘッダーを参照
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def get_caller_key(request: Request) -> str:
    """呼び出し元キー: APIキーがあればそのハッシュ、なければIP"""
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key:
        return "key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return "ip:" + get_client_ip(request)


limiter = Limiter(
    key_func=get_caller_key,
    default_limits=["100/minute"],
    storage_uri=settings.rate_limit_storage_uri,
    key_prefix="ddex_delivery",
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """レート制限超過時のカスタムエラーハンドラ"""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "retry_after": exc.detail,
        },
    )


TRIGGER_RATE_LIMIT = settings.TRIGGER_RATE_LIMIT  # 配信トリガー
