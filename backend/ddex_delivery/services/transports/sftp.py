import io
import os
import posixpath
import paramiko

from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, Protocol, TargetSpec
from ddex_delivery.services.errors import ValidationError
from ddex_delivery.services.transports.base import (
    TransportAdapter, Deadline, staging_directory, stage_file, require_fields,
)

logger = get_logger(__name__)

_KEY_TYPES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def load_private_key(text: str, passphrase: str = None) -> paramiko.PKey:
    """PEM文字列から秘密鍵を読み込む (RSA / Ed25519 / ECDSA)"""
    for key_cls in _KEY_TYPES:
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase or None)
        except paramiko.SSHException:
            continue
    raise ValidationError("SFTP private key could not be loaded (unsupported type or wrong passphrase)")


class SFTPTransport(TransportAdapter):
    """SFTP (パスワード or 秘密鍵認証)"""

    protocol = Protocol.SFTP

    def __init__(self, client_factory=None, **kwargs):
        super().__init__(**kwargs)
        self.client_factory = client_factory or self._open

    def _open(self, connection: dict) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        try:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            pkey = None
            if connection.get("privateKey"):
                pkey = load_private_key(connection["privateKey"], connection.get("passphrase"))
            client.connect(
                hostname=connection["host"],
                port=int(connection.get("port") or 22),
                username=connection.get("username"),
                password=None if pkey else connection.get("password"),
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        return client

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        require_fields("SFTP", conn, "host", "username")
        if not conn.get("password") and not conn.get("privateKey"):
            raise ValidationError("SFTP connection requires password or privateKey")
        directory = conn.get("directory") or "/"

        delivered = []
        total = 0
        with staging_directory() as staging:
            client = self.client_factory(conn)
            try:
                sftp = client.open_sftp()
                try:
                    # 転送中の無応答はチャネルのタイムアウトで検出する
                    sftp.get_channel().settimeout(self.connect_timeout)
                    ensure_remote_dir(sftp, directory)
                    for pf in pkg.files:
                        deadline.check()
                        local_path = stage_file(self.protocol.value, staging, pf)
                        remote_path = posixpath.join(directory, pf.name)
                        sftp.put(local_path, remote_path, callback=deadline.progress_callback())
                        os.remove(local_path)
                        delivered.append(DeliveredFile(
                            name=pf.name,
                            size=pf.size,
                            md5=pf.md5_hash,
                            location=remote_path,
                            original_name=pf.original_name,
                        ))
                        total += pf.size
                        logger.debug(f"SFTP転送: {remote_path} ({pf.size} bytes)")
                finally:
                    sftp.close()
            finally:
                client.close()

        return DeliveryResult(
            protocol=self.protocol.value,
            files=delivered,
            bytes_transferred=total,
            message_id=pkg.metadata.message_id,
            acknowledgment=f"Uploaded {len(delivered)} files via SFTP",
        )


def ensure_remote_dir(sftp, directory: str):
    current = "/" if directory.startswith("/") else ""
    for part in [p for p in directory.split("/") if p]:
        current = posixpath.join(current, part) if current else part
        try:
            sftp.stat(current)
        except IOError:
            sftp.mkdir(current)
