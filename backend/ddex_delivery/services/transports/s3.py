import io
import base64
from urllib.parse import quote

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, Protocol, TargetSpec
from ddex_delivery.services.transports.base import TransportAdapter, Deadline, require_fields

logger = get_logger(__name__)


def object_key(prefix: str, name: str) -> str:
    prefix = (prefix or "").strip("/")
    return f"{prefix}/{name}" if prefix else name


class S3Transport(TransportAdapter):
    """
    Amazon S3

    5MB以下: put_object + Content-MD5 (S3側で整合性検証)
    5MB超:   マルチパートアップロード (md5はメタデータにのみ付与)
    """

    protocol = Protocol.S3

    def __init__(self, client_factory=None, multipart_threshold: int = None, **kwargs):
        super().__init__(**kwargs)
        self.client_factory = client_factory or self._client
        self.multipart_threshold = multipart_threshold or settings.MULTIPART_THRESHOLD_BYTES

    def _client(self, connection: dict):
        return boto3.client(
            "s3",
            region_name=connection.get("region") or "us-east-1",
            aws_access_key_id=connection.get("accessKeyId"),
            aws_secret_access_key=connection.get("secretAccessKey"),
            config=Config(
                connect_timeout=self.connect_timeout,
                read_timeout=self.attempt_timeout,
                retries={"max_attempts": 2},
            ),
        )

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        require_fields("S3", conn, "bucket")
        bucket = conn["bucket"]
        region = conn.get("region") or "us-east-1"
        client = self.client_factory(conn)
        transfer_config = TransferConfig(
            multipart_threshold=self.multipart_threshold,
            multipart_chunksize=self.multipart_threshold,
        )

        delivered = []
        total = 0
        for pf in pkg.files:
            deadline.check()
            key = object_key(conn.get("prefix"), pf.name)
            metadata = {k: quote(v, safe="") for k, v in self.delivery_metadata(pkg, pf).items()}
            etag = None
            if pf.size > self.multipart_threshold:
                client.upload_fileobj(
                    io.BytesIO(pf.content),
                    bucket,
                    key,
                    ExtraArgs={"ContentType": pf.content_type, "Metadata": metadata},
                    Config=transfer_config,
                )
            else:
                resp = client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=pf.content,
                    ContentMD5=base64.b64encode(bytes.fromhex(pf.md5_hash)).decode("ascii"),
                    ContentType=pf.content_type,
                    Metadata=metadata,
                )
                etag = (resp or {}).get("ETag")
            delivered.append(DeliveredFile(
                name=pf.name,
                size=pf.size,
                md5=pf.md5_hash,
                location=f"https://{bucket}.s3.{region}.amazonaws.com/{key}",
                original_name=pf.original_name,
                etag=etag,
            ))
            total += pf.size
            logger.debug(f"S3アップロード: s3://{bucket}/{key} ({pf.size} bytes)")

        return DeliveryResult(
            protocol=self.protocol.value,
            files=delivered,
            bytes_transferred=total,
            message_id=pkg.metadata.message_id,
            acknowledgment=f"Uploaded {len(delivered)} files to S3",
        )
