"""共通依存関数: APIキー認証・リリース取得"""
import secrets
from functools import lru_cache
from typing import Optional
from fastapi import Header, HTTPException

from ddex_delivery.core.config import settings
from ddex_delivery.services.release_store import FirestoreReleaseStore, ReleaseStore


async def require_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """X-API-Key が API_TOKEN と一致しなければ401"""
    if not settings.API_TOKEN:
        raise HTTPException(status_code=503, detail="API_TOKEN が設定されていません")
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.API_TOKEN):
        raise HTTPException(status_code=401, detail="APIキーが無効です")
    return x_api_key


@lru_cache
def get_release_store() -> ReleaseStore:
    """受付時のリリース存在確認に使うストア (Firestoreクライアントは初回アクセス時に生成)"""
    return FirestoreReleaseStore()
