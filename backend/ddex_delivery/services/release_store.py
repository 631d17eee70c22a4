"""リリース取得 (カタログはFirestoreの releases コレクション)"""
import json
from typing import Optional, Protocol

from google.cloud import firestore
from google.oauth2 import service_account

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.release import Release, ReleaseTrack

logger = get_logger(__name__)


class ReleaseStore(Protocol):
    def get_release(self, release_id: str) -> Optional[Release]:
        ...


class FirestoreReleaseStore:
    """Firestoreリリースローダー"""

    def __init__(self, credential_json: str = None, project: str = None, collection: str = None, client=None):
        """
        Args:
            credential_json: サービスアカウントJSON (平文)。省略時はADC
            client: テスト用に差し替えるFirestoreクライアント
        """
        self.credential_json = credential_json if credential_json is not None else settings.FIRESTORE_CREDENTIAL_JSON
        self.project = project or settings.FIRESTORE_PROJECT or None
        self.collection = collection or settings.RELEASES_COLLECTION
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if self.credential_json:
                key_dict = json.loads(self.credential_json)
                creds = service_account.Credentials.from_service_account_info(key_dict)
                self._client = firestore.Client(credentials=creds, project=self.project or key_dict.get("project_id"))
            else:
                self._client = firestore.Client(project=self.project)
        return self._client

    def get_release(self, release_id: str) -> Optional[Release]:
        doc = self.client.collection(self.collection).document(release_id).get()
        if not doc.exists:
            logger.warning(f"リリースが見つかりません: {self.collection}/{release_id}")
            return None
        return release_from_document(release_id, doc.to_dict() or {})


def release_from_document(release_id: str, data: dict) -> Release:
    """
    リリースドキュメントを配信用の形に変換

    UPCは basic.barcode → metadata.barcode の順に探す。
    アセットURLは assets.audioUrls/imageUrls があればそれを、無ければ
    tracks[].audio.url と assets.coverImage / additionalImages から組み立てる。
    """
    basic = data.get("basic") or data.get("metadata") or {}
    assets = data.get("assets") or {}
    raw_tracks = data.get("tracks") or []

    tracks = []
    for t in raw_tracks:
        tracks.append(ReleaseTrack(
            sequence_number=t.get("sequenceNumber"),
            disc_number=t.get("discNumber") or 1,
            isrc=t.get("isrc"),
            title=(t.get("metadata") or {}).get("title") or t.get("title"),
        ))

    audio_urls = assets.get("audioUrls")
    if audio_urls is None:
        audio_urls = [((t.get("audio") or {}).get("url") or "") for t in raw_tracks]

    image_urls = assets.get("imageUrls")
    if image_urls is None:
        image_urls = []
        cover = assets.get("coverImage") or {}
        if cover.get("url"):
            image_urls.append(cover["url"])
        for extra in assets.get("additionalImages") or []:
            if extra.get("url"):
                image_urls.append(extra["url"])

    return Release(
        release_id=release_id,
        upc=basic.get("barcode") or data.get("upc"),
        title=basic.get("title"),
        artist=basic.get("displayArtist"),
        tracks=tracks,
        audio_urls=audio_urls,
        image_urls=image_urls,
    )
