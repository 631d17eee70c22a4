"""転送アダプタ共通部

全アダプタ共通の性質:
- ファイル単位で順に転送し、最初のエラーで残りを中断する (ファイル間のトランザクションはない)
- 転送先のファイル名は決定的なので、同じ試行を再実行すれば途中までの分は上書きされる
- 1試行全体の上限時間 (ATTEMPT_TIMEOUT_SECONDS) をファイルごと、および転送中のブロックごとに確認する
"""
import os
import time
import shutil
import hashlib
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import (
    DeliveryPackage, DeliveryResult, PackageFile, PackageMetadata, FileType, MessageSubType, Protocol, TargetSpec,
)
from ddex_delivery.services.errors import TransportError, ValidationError

logger = get_logger(__name__)

CONNECTION_TEST_FILE = "connection_test.txt"


class Deadline:
    """1試行あたりの上限時間"""

    def __init__(self, protocol: str, seconds: float, clock=time.monotonic):
        self.protocol = protocol
        self.seconds = seconds
        self.clock = clock
        self.started = clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        return max(self.seconds - self.elapsed(), 0.0)

    def check(self):
        if self.elapsed() >= self.seconds:
            raise TransportError(self.protocol, TimeoutError(f"attempt exceeded {self.seconds:.0f}s"))

    def progress_callback(self):
        """ftplib / paramiko の進捗コールバック用。ブロック転送のたびに上限時間を確認する"""
        return lambda *_: self.check()


@contextmanager
def staging_directory():
    """ローカル一時領域。正常・異常どちらの終了でも削除する"""
    path = tempfile.mkdtemp(prefix="ddex_delivery_", dir=settings.STAGING_DIR or None)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def file_md5(path: str) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def stage_file(protocol: str, staging_dir: str, pf: PackageFile) -> str:
    """一時領域に書き出し、書き出し後のMD5がパッケージ作成時と一致するか確認"""
    if pf.content is None:
        raise TransportError(protocol, f"file content was not resolved: {pf.name}")
    path = os.path.join(staging_dir, pf.name)
    with open(path, "wb") as fh:
        fh.write(pf.content)
    staged_md5 = file_md5(path)
    if pf.md5_hash and staged_md5 != pf.md5_hash:
        raise TransportError(protocol, f"MD5 mismatch after staging {pf.name}: {staged_md5} != {pf.md5_hash}")
    return path


def require_fields(protocol: str, connection: dict, *fields: str):
    missing = [f for f in fields if not connection.get(f)]
    if missing:
        raise ValidationError(f"{protocol} connection is missing: {', '.join(missing)}")


class TransportAdapter(ABC):
    """配信先プロトコルごとの転送処理"""

    protocol: Protocol
    # Falseのアダプタはメディアを転送しない (パッケージ作成時にダウンロード不要)
    transfers_media = True

    def __init__(self, connect_timeout: int = None, attempt_timeout: int = None, deadline_clock=time.monotonic):
        self.connect_timeout = connect_timeout or settings.CONNECT_TIMEOUT_SECONDS
        self.attempt_timeout = attempt_timeout or settings.ATTEMPT_TIMEOUT_SECONDS
        self.deadline_clock = deadline_clock

    def deliver(self, target: TargetSpec, pkg: DeliveryPackage) -> DeliveryResult:
        """パッケージを転送する。失敗は TransportError (設定不備は ValidationError)"""
        deadline = Deadline(self.protocol.value, self.attempt_timeout, clock=self.deadline_clock)
        logger.info(f"{self.protocol.value}転送開始: target={target.name}, files={len(pkg.files)}")
        try:
            result = self._deliver(target, pkg, deadline)
        except (TransportError, ValidationError):
            raise
        except Exception as e:
            raise TransportError(self.protocol.value, e) from e
        result.duration_ms = int(deadline.elapsed() * 1000)
        logger.info(
            f"{self.protocol.value}転送完了: target={target.name}, "
            f"bytes={result.bytes_transferred}, {result.duration_ms}ms"
        )
        return result

    @abstractmethod
    def _deliver(self, target: TargetSpec, pkg: DeliveryPackage, deadline: Deadline) -> DeliveryResult:
        ...

    def test_connection(self, target: TargetSpec) -> dict:
        """1ファイルだけのテストパッケージを送って接続を確認する。例外は投げない"""
        timestamp = datetime.now(timezone.utc)
        content = f"DDEX delivery connection test {timestamp.isoformat()}\n".encode("utf-8")
        probe = DeliveryPackage(
            delivery_id=0,
            upc="0000000000000",
            files=(PackageFile(
                name=CONNECTION_TEST_FILE,
                type=FileType.XML,
                content=content,
                md5_hash=hashlib.md5(content).hexdigest(),
                size=len(content),
            ),),
            metadata=PackageMetadata(
                message_id=f"TEST_{int(timestamp.timestamp())}",
                message_type="ConnectionTest",
                message_sub_type=MessageSubType.INITIAL,
                test_mode=True,
            ),
            distributor_id=target.config.get("distributorId") or settings.DISTRIBUTOR_ID or None,
        )
        try:
            result = self.deliver(target, probe)
        except Exception as e:
            logger.warning(f"接続テスト失敗: target={target.name} - {e}")
            return {
                "success": False,
                "message": str(e),
                "timestamp": timestamp.isoformat(),
                "details": {"protocol": self.protocol.value},
            }
        return {
            "success": True,
            "message": "Connection successful",
            "timestamp": timestamp.isoformat(),
            "details": result.model_dump(mode="json"),
        }

    @staticmethod
    def delivery_metadata(pkg: DeliveryPackage, pf: PackageFile) -> dict:
        """オブジェクトストレージに付与するメタデータ"""
        return {
            "delivery-id": str(pkg.delivery_id),
            "message-id": pkg.metadata.message_id,
            "message-sub-type": pkg.metadata.message_sub_type.value,
            "test-mode": str(pkg.metadata.test_mode).lower(),
            "ddex-name": pf.name,
            "upc": pkg.upc,
            "md5-hash": pf.md5_hash or "",
            "original-name": pf.original_name or pf.name,
        }
