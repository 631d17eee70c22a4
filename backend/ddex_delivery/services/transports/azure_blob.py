from azure.storage.blob import BlobServiceClient, ContentSettings

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, Protocol, TargetSpec
from ddex_delivery.services.transports.base import TransportAdapter, Deadline, require_fields
from ddex_delivery.services.transports.s3 import object_key

logger = get_logger(__name__)

BLOCK_SIZE = 4 * 1024 * 1024


def connection_string(account_name: str, account_key: str) -> str:
    return (
        f"DefaultEndpointsProtocol=https;AccountName={account_name};"
        f"AccountKey={account_key};EndpointSuffix=core.windows.net"
    )


class AzureBlobTransport(TransportAdapter):
    """Azure Blob Storage (しきい値超はブロック分割アップロード)"""

    protocol = Protocol.AZURE

    def __init__(self, service_factory=None, multipart_threshold: int = None, **kwargs):
        super().__init__(**kwargs)
        self.service_factory = service_factory or self._service
        self.multipart_threshold = multipart_threshold or settings.MULTIPART_THRESHOLD_BYTES

    def _service(self, connection: dict) -> BlobServiceClient:
        return BlobServiceClient.from_connection_string(
            connection_string(connection["accountName"], connection["accountKey"]),
            max_single_put_size=self.multipart_threshold,
            max_block_size=BLOCK_SIZE,
            connection_timeout=self.connect_timeout,
        )

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        require_fields("Azure", conn, "accountName", "accountKey", "containerName")
        container = self.service_factory(conn).get_container_client(conn["containerName"])

        delivered = []
        total = 0
        for pf in pkg.files:
            deadline.check()
            blob_name = object_key(conn.get("prefix"), pf.name)
            blob = container.get_blob_client(blob_name)
            # Azureのメタデータキーは識別子形式のみ (ハイフン不可)
            metadata = {k.replace("-", "_"): v for k, v in self.delivery_metadata(pkg, pf).items()}
            blob.upload_blob(
                pf.content,
                overwrite=True,
                content_settings=ContentSettings(
                    content_type=pf.content_type,
                    content_md5=bytearray(bytes.fromhex(pf.md5_hash)),
                ),
                metadata=metadata,
                timeout=max(int(deadline.remaining()), 1),
            )
            delivered.append(DeliveredFile(
                name=pf.name,
                size=pf.size,
                md5=pf.md5_hash,
                location=blob.url,
                original_name=pf.original_name,
            ))
            total += pf.size
            logger.debug(f"Azureアップロード: {blob_name} ({pf.size} bytes)")

        return DeliveryResult(
            protocol=self.protocol.value,
            files=delivered,
            bytes_transferred=total,
            message_id=pkg.metadata.message_id,
            acknowledgment=f"Uploaded {len(delivered)} files to Azure Blob Storage",
        )
