"""マネージドストレージ (Google Cloud Storage) 配信

deliveries/{distributorId}/{timestamp}/ 配下に書き込み、
notifyEndpoint があれば受信側へ配置先をPOSTで通知する (通知失敗は警告のみ)。
"""
import json
import time
import requests
from google.cloud import storage
from google.oauth2 import service_account

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, FileType, Protocol, TargetSpec
from ddex_delivery.services.errors import ValidationError
from ddex_delivery.services.transports.base import TransportAdapter, Deadline

logger = get_logger(__name__)


def delivery_base_path(distributor_id: str, timestamp_ms: int) -> str:
    return f"deliveries/{distributor_id}/{timestamp_ms}"


def object_path(base_path: str, pf) -> str:
    if pf.type == FileType.XML:
        return f"{base_path}/{pf.name}"
    return f"{base_path}/{pf.type.value}/{pf.name}"


class StorageTransport(TransportAdapter):

    protocol = Protocol.STORAGE

    def __init__(self, client_factory=None, session: requests.Session = None, clock=time.time, **kwargs):
        super().__init__(**kwargs)
        self.client_factory = client_factory or self._client
        self.session = session or requests.Session()
        self.clock = clock

    def _client(self, connection: dict) -> storage.Client:
        credential_json = connection.get("serviceAccount") or settings.FIRESTORE_CREDENTIAL_JSON
        if credential_json:
            key_dict = json.loads(credential_json) if isinstance(credential_json, str) else credential_json
            creds = service_account.Credentials.from_service_account_info(key_dict)
            return storage.Client(credentials=creds, project=key_dict.get("project_id"))
        return storage.Client(project=settings.FIRESTORE_PROJECT or None)

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        bucket_name = conn.get("bucket") or settings.GCS_BUCKET
        if not bucket_name:
            raise ValidationError("Storage connection is missing: bucket")
        bucket = self.client_factory(conn).bucket(bucket_name)
        distributor_id = pkg.distributor_id or "default"
        timestamp_ms = int(self.clock() * 1000)
        base_path = delivery_base_path(distributor_id, timestamp_ms)

        delivered = []
        total = 0
        for pf in pkg.files:
            deadline.check()
            path = object_path(base_path, pf)
            blob = bucket.blob(path)
            blob.metadata = {**self.delivery_metadata(pkg, pf), "content-type": pf.content_type}
            blob.upload_from_string(
                pf.content,
                content_type=pf.content_type,
                checksum="md5",
                timeout=max(deadline.remaining(), 1),
            )
            delivered.append(DeliveredFile(
                name=pf.name,
                size=pf.size,
                md5=pf.md5_hash,
                location=f"gs://{bucket_name}/{path}",
                original_name=pf.original_name,
            ))
            total += pf.size
            logger.debug(f"Storageアップロード: {path} ({pf.size} bytes)")

        if conn.get("notifyEndpoint"):
            self._notify(conn["notifyEndpoint"], pkg, distributor_id, base_path, timestamp_ms)

        return DeliveryResult(
            protocol=self.protocol.value,
            files=delivered,
            bytes_transferred=total,
            message_id=pkg.metadata.message_id,
            acknowledgment=f"Uploaded {len(delivered)} files to Storage",
            response={"bucket": bucket_name, "deliveryPath": base_path},
        )

    def _notify(self, endpoint: str, pkg: DeliveryPackage, distributor_id: str, base_path: str, timestamp_ms: int):
        payload = {
            "distributorId": distributor_id,
            "deliveryPath": base_path,
            "messageId": pkg.metadata.message_id,
            "messageSubType": pkg.metadata.message_sub_type.value,
            "timestamp": timestamp_ms,
            "upc": pkg.upc,
        }
        try:
            resp = self.session.post(endpoint, json=payload, timeout=self.connect_timeout)
            resp.raise_for_status()
            logger.info(f"配信通知送信: {endpoint}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"配信通知送信失敗 (配信は完了済み): {endpoint} - {e}")
