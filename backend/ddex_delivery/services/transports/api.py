"""汎用HTTP API配信 (ERN XML + メタデータJSON のマルチパートPOST)"""
import json
import base64
import requests

from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, Protocol, TargetSpec
from ddex_delivery.services.errors import TransportError, ValidationError
from ddex_delivery.services.transports.base import TransportAdapter, Deadline, require_fields

logger = get_logger(__name__)


def parse_response_body(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"text": resp.text[:2000]}
    return body if isinstance(body, dict) else {"data": body}


class APITransport(TransportAdapter):

    protocol = Protocol.API

    def __init__(self, session: requests.Session = None, **kwargs):
        super().__init__(**kwargs)
        self.session = session or requests.Session()

    def auth_headers(self, auth: dict, deadline: Deadline) -> dict:
        """Bearer / Basic / OAuth2 (client_credentials) / None"""
        auth_type = (auth.get("type") or "None").lower()
        creds = auth.get("credentials") or {}
        if auth_type == "none":
            return {}
        if auth_type == "bearer":
            return {"Authorization": f"Bearer {creds.get('token', '')}"}
        if auth_type == "basic":
            raw = f"{creds.get('username', '')}:{creds.get('password', '')}".encode("utf-8")
            return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
        if auth_type == "oauth2":
            return {"Authorization": f"Bearer {self._fetch_oauth2_token(creds, deadline)}"}
        raise ValidationError(f"Unsupported API auth type: {auth.get('type')}")

    def _fetch_oauth2_token(self, creds: dict, deadline: Deadline) -> str:
        require_fields("OAuth2", creds, "tokenUrl", "clientId", "clientSecret")
        data = {
            "grant_type": "client_credentials",
            "client_id": creds["clientId"],
            "client_secret": creds["clientSecret"],
        }
        if creds.get("scope"):
            data["scope"] = creds["scope"]
        resp = self.session.post(creds["tokenUrl"], data=data, timeout=(self.connect_timeout, deadline.remaining()))
        if not resp.ok:
            raise TransportError(self.protocol.value, f"OAuth2 token request failed ({resp.status_code})")
        token = parse_response_body(resp).get("access_token")
        if not token:
            raise TransportError(self.protocol.value, "OAuth2 token response has no access_token")
        return token

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        require_fields("API", conn, "endpoint")
        method = (conn.get("method") or "POST").upper()
        headers = dict(conn.get("headers") or {})
        headers.update(self.auth_headers(conn.get("auth") or {}, deadline))

        ern = pkg.ern_file
        metadata = {
            "messageId": pkg.metadata.message_id,
            "messageType": pkg.metadata.message_type,
            "messageSubType": pkg.metadata.message_sub_type.value,
            "releaseTitle": pkg.release_title,
            "testMode": pkg.metadata.test_mode,
            "upc": pkg.upc,
        }
        files = {
            "ern": (ern.name, ern.content, "text/xml"),
            "metadata": (None, json.dumps(metadata, ensure_ascii=False), "application/json"),
        }
        deadline.check()
        resp = self.session.request(
            method,
            conn["endpoint"],
            headers=headers,
            files=files,
            timeout=(self.connect_timeout, max(deadline.remaining(), 1)),
        )
        body = parse_response_body(resp)
        if not resp.ok:
            message = body.get("message") or body.get("error") or body.get("text") or resp.reason
            raise TransportError(self.protocol.value, f"API rejected delivery ({resp.status_code}): {message}")

        return DeliveryResult(
            protocol=self.protocol.value,
            files=[DeliveredFile(name=ern.name, size=ern.size, md5=ern.md5_hash, location=conn["endpoint"])],
            bytes_transferred=ern.size,
            message_id=pkg.metadata.message_id,
            acknowledgment=body.get("acknowledgment") or body.get("message")
            or f"Delivery accepted by API (Status: {resp.status_code})",
            acknowledgment_id=_as_str(body.get("acknowledgmentId") or body.get("id")),
            dsp_message_id=_as_str(body.get("messageId")),
            response={"statusCode": resp.status_code, "body": body},
        )


def _as_str(value):
    return None if value is None else str(value)
