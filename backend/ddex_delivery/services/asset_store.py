"""アセット (音声・画像) のダウンロード"""
from typing import Protocol
import requests

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.services.errors import TransportError

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


class AssetStore(Protocol):
    def download(self, url: str) -> bytes:
        ...


class HttpAssetStore:
    """HTTP(S)経由でアセットを取得。失敗はリトライ対象のTransportError"""

    def __init__(self, connect_timeout: int = None, read_timeout: int = None, session: requests.Session = None):
        self.connect_timeout = connect_timeout or settings.CONNECT_TIMEOUT_SECONDS
        self.read_timeout = read_timeout or settings.ATTEMPT_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def download(self, url: str) -> bytes:
        try:
            with self.session.get(url, stream=True, timeout=(self.connect_timeout, self.read_timeout)) as resp:
                resp.raise_for_status()
                chunks = [chunk for chunk in resp.iter_content(chunk_size=CHUNK_SIZE) if chunk]
        except requests.exceptions.RequestException as e:
            logger.error(f"アセット取得失敗: {url} - {e}")
            raise TransportError("HTTP", e) from e
        data = b"".join(chunks)
        logger.debug(f"アセット取得: {url} ({len(data)} bytes)")
        return data
