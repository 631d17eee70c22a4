"""DSPポインタ配信

メディアのバイト列は送らず、アセットURLとERN XMLをJSONでPOSTする。
受信側が非同期にアセットを取得する前提。
"""
import json
from datetime import datetime, timezone
import requests

from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import (
    DeliveryPackage, DeliveryResult, DeliveredFile, FileType, Protocol, TargetSpec,
)
from ddex_delivery.services.errors import TransportError
from ddex_delivery.services.transports.api import parse_response_body, _as_str
from ddex_delivery.services.transports.base import TransportAdapter, Deadline

logger = get_logger(__name__)


def build_dsp_payload(pkg: DeliveryPackage) -> dict:
    now = datetime.now(timezone.utc).isoformat()
    return {
        "distributorId": pkg.distributor_id,
        "messageId": pkg.metadata.message_id,
        "messageType": pkg.metadata.message_type,
        "messageSubType": pkg.metadata.message_sub_type.value,
        "releaseTitle": pkg.release_title,
        "releaseArtist": pkg.release_artist,
        "ernXml": pkg.ern_file.content.decode("utf-8") if pkg.ern_file.content else None,
        "testMode": pkg.metadata.test_mode,
        "priority": pkg.metadata.priority,
        "audioFiles": [f.url for f in pkg.files_of(FileType.AUDIO)],
        "imageFiles": [f.url for f in pkg.files_of(FileType.IMAGE)],
        "timestamp": now,
        "upc": pkg.upc,
        "ern": {
            "messageId": pkg.metadata.message_id,
            "version": pkg.ern_version,
            "releaseCount": 1,
            "messageSubType": pkg.metadata.message_sub_type.value,
        },
        "processing": {"status": "received", "receivedAt": now},
        "fileTransferRequired": True,
        "sourceDeliveryId": pkg.delivery_id,
    }


class DSPTransport(TransportAdapter):

    protocol = Protocol.API
    transfers_media = False

    def __init__(self, session: requests.Session = None, **kwargs):
        super().__init__(**kwargs)
        self.session = session or requests.Session()

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        endpoint = conn.get("endpoint")
        if not endpoint:
            raise TransportError("DSP", "DSP endpoint not configured")

        headers = {"Content-Type": "application/json"}
        if pkg.distributor_id:
            headers["X-Distributor-ID"] = pkg.distributor_id
        api_key = conn.get("apiKey") or target.config.get("apiKey")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        payload = build_dsp_payload(pkg)
        body_text = json.dumps(payload, ensure_ascii=False)
        deadline.check()
        resp = self.session.post(
            endpoint,
            data=body_text.encode("utf-8"),
            headers=headers,
            timeout=(self.connect_timeout, max(deadline.remaining(), 1)),
        )
        body = parse_response_body(resp)
        if not (200 <= resp.status_code < 400):
            message = body.get("message") or body.get("error") or body.get("text") or resp.reason
            raise TransportError("DSP", f"DSP rejected delivery ({resp.status_code}): {message}")

        logger.info(f"DSP受付: target={target.name}, status={resp.status_code}")
        ern = pkg.ern_file
        return DeliveryResult(
            protocol="DSP",
            files=[DeliveredFile(name=ern.name, size=ern.size, md5=ern.md5_hash, location=endpoint)],
            bytes_transferred=len(body_text.encode("utf-8")),
            message_id=pkg.metadata.message_id,
            acknowledgment=body.get("acknowledgment") or body.get("message")
            or f"Delivery accepted by DSP (Status: {resp.status_code})",
            acknowledgment_id=_as_str(body.get("acknowledgmentId") or body.get("deliveryId")),
            dsp_message_id=_as_str(body.get("messageId")),
            response={"statusCode": resp.status_code, "body": body},
        )
