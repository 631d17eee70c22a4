import os
import ftplib
import posixpath

from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import DeliveryPackage, DeliveryResult, DeliveredFile, Protocol, TargetSpec
from ddex_delivery.services.transports.base import (
    TransportAdapter, Deadline, staging_directory, stage_file, require_fields,
)

logger = get_logger(__name__)


class FTPTransport(TransportAdapter):
    """FTP / FTPS (パッシブモード)"""

    protocol = Protocol.FTP

    def __init__(self, ftp_factory=None, **kwargs):
        super().__init__(**kwargs)
        self.ftp_factory = ftp_factory or self._open

    def _open(self, connection: dict) -> ftplib.FTP:
        secure = bool(connection.get("secure"))
        ftp = ftplib.FTP_TLS(timeout=self.connect_timeout) if secure else ftplib.FTP(timeout=self.connect_timeout)
        try:
            ftp.connect(connection["host"], int(connection.get("port") or 21))
            ftp.login(connection.get("username") or "anonymous", connection.get("password") or "")
            if secure:
                ftp.prot_p()
            ftp.set_pasv(True)
        except Exception:
            ftp.close()
            raise
        return ftp

    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        conn = target.connection
        require_fields("FTP", conn, "host")
        directory = conn.get("directory") or "/"

        delivered = []
        total = 0
        with staging_directory() as staging:
            ftp = self.ftp_factory(conn)
            try:
                ensure_remote_dir(ftp, directory)
                for pf in pkg.files:
                    deadline.check()
                    local_path = stage_file(self.protocol.value, staging, pf)
                    with open(local_path, "rb") as fh:
                        ftp.storbinary(f"STOR {pf.name}", fh, callback=deadline.progress_callback())
                    os.remove(local_path)
                    delivered.append(DeliveredFile(
                        name=pf.name,
                        size=pf.size,
                        md5=pf.md5_hash,
                        location=posixpath.join(directory, pf.name),
                        original_name=pf.original_name,
                    ))
                    total += pf.size
                    logger.debug(f"FTP転送: {pf.name} ({pf.size} bytes)")
            finally:
                _close(ftp)

        return DeliveryResult(
            protocol=self.protocol.value,
            files=delivered,
            bytes_transferred=total,
            message_id=pkg.metadata.message_id,
            acknowledgment=f"Uploaded {len(delivered)} files via FTP",
        )


def ensure_remote_dir(ftp, directory: str):
    """ディレクトリを作成しながら移動 (既存ならそのまま)"""
    if directory.startswith("/"):
        ftp.cwd("/")
    for part in [p for p in directory.split("/") if p]:
        try:
            ftp.cwd(part)
        except ftplib.error_perm:
            ftp.mkd(part)
            ftp.cwd(part)


def _close(ftp):
    try:
        ftp.quit()
    except ftplib.all_errors as e:
        logger.debug(f"FTP切断時エラー: {e}")
        ftp.close()
