"""冪等実行ロック

1配信意図 (冪等キー) につき、期限内の processing ロックは常に1つだけ。
取得は delivery_locks の1行に対する読み込み→判定→書き込みを1トランザクションで行い、
書き込みは version 列による条件付きUPDATE (初回は主キーINSERT) で競合を検出する。
競合に負けた側は読み直して判定をやり直すため、同時に取得できるのは1者のみ。
"""
from datetime import datetime, timedelta
from typing import Callable, Optional
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ddex_delivery.core.clock import now_jst
from ddex_delivery.core.config import settings
from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_lock import DeliveryLock
from ddex_delivery.services.errors import LockContention

logger = get_logger(__name__)

MAX_CAS_ROUNDS = 5


class LockResult(BaseModel):
    acquired: bool
    reason: Optional[str] = None  # locked / completed
    result: Optional[dict] = None
    attempt: Optional[int] = None


class LockManager:

    def __init__(
        self,
        session_factory=SessionLocal,
        ttl_seconds: int = None,
        retention_seconds: int = None,
        instance_id: str = None,
        clock: Callable[[], datetime] = now_jst,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds or settings.LOCK_TTL_SECONDS)
        self.retention = timedelta(seconds=retention_seconds or settings.LOCK_RETENTION_SECONDS)
        self.instance_id = instance_id or settings.instance_id
        self.clock = clock

    def acquire(self, key: str) -> LockResult:
        """
        ロック取得を試みる。

        - ロックなし / 期限切れprocessing / failed → 取得 (attempt+1)
        - 期限内processing → acquired=False, reason="locked"
        - completed → acquired=False, reason="completed" + キャッシュ済み結果
        """
        for _ in range(MAX_CAS_ROUNDS):
            db = self.session_factory()
            try:
                now = self.clock()
                lock = db.get(DeliveryLock, key)

                if lock is None:
                    lock = DeliveryLock(
                        lock_id=key,
                        status="processing",
                        acquired_at=now,
                        expires_at=now + self.ttl,
                        attempt=1,
                        owner_instance_id=self.instance_id,
                    )
                    db.add(lock)
                    db.commit()
                    logger.info(f"ロック取得: {key} (attempt=1)")
                    return LockResult(acquired=True, attempt=1)

                if lock.status == "processing" and lock.expires_at > now:
                    logger.info(f"ロック競合: {key} (owner={lock.owner_instance_id})")
                    return LockResult(acquired=False, reason="locked")

                if lock.status == "completed":
                    logger.info(f"配信済みのためスキップ: {key}")
                    return LockResult(acquired=False, reason="completed", result=lock.result)

                if lock.status == "processing":
                    logger.warning(f"期限切れロックを引き継ぎ: {key} (前owner={lock.owner_instance_id})")

                attempt = (lock.attempt or 0) + 1
                lock.status = "processing"
                lock.acquired_at = now
                lock.expires_at = now + self.ttl
                lock.released_at = None
                lock.attempt = attempt
                lock.owner_instance_id = self.instance_id
                lock.result = None
                db.commit()
                logger.info(f"ロック取得: {key} (attempt={attempt})")
                return LockResult(acquired=True, attempt=attempt)

            except (IntegrityError, StaleDataError) as e:
                db.rollback()
                logger.debug(f"ロック更新競合、再判定: {key} - {type(e).__name__}")
            finally:
                db.close()

        return LockResult(acquired=False, reason="locked")

    def require(self, key: str) -> LockResult:
        """取得できなければ LockContention。completed の場合はそのまま結果を返す"""
        result = self.acquire(key)
        if not result.acquired and result.reason == "locked":
            raise LockContention(key)
        return result

    def holds(self, key: str, attempt: int) -> bool:
        """このインスタンスが指定attemptのprocessingロックをまだ保持しているか"""
        db = self.session_factory()
        try:
            lock = db.get(DeliveryLock, key)
            return _owned_by(lock, self.instance_id, attempt)
        finally:
            db.close()

    def release(self, key: str, status: str, result: dict = None, attempt: int = None) -> bool:
        """
        終了状態を書き込み、重複リクエストに答えられるよう保持期間を延ばす。

        他インスタンスが引き継いだprocessingロック (attempt指定時は別attemptのもの) には触れず False を返す。
        """
        for _ in range(MAX_CAS_ROUNDS):
            db = self.session_factory()
            try:
                now = self.clock()
                lock = db.get(DeliveryLock, key)
                if lock is None:
                    lock = DeliveryLock(lock_id=key, acquired_at=now, attempt=0)
                    db.add(lock)
                elif lock.status == "processing" and not _owned_by(lock, self.instance_id, attempt):
                    logger.warning(
                        f"ロック解放スキップ: {key} (owner={lock.owner_instance_id}, attempt={lock.attempt}, "
                        f"self={self.instance_id}, expected_attempt={attempt})"
                    )
                    return False
                lock.status = status
                lock.released_at = now
                lock.expires_at = now + self.retention
                lock.result = result
                db.commit()
                logger.info(f"ロック解放: {key} ({status})")
                return True
            except (IntegrityError, StaleDataError) as e:
                db.rollback()
                logger.debug(f"ロック解放競合、再試行: {key} - {type(e).__name__}")
            finally:
                db.close()
        raise LockContention(key)

    def purge_expired(self) -> int:
        """保持期間を過ぎた終了済みロックを削除"""
        db = self.session_factory()
        try:
            now = self.clock()
            deleted = db.query(DeliveryLock).filter(
                DeliveryLock.status.in_(("completed", "failed")),
                DeliveryLock.expires_at < now,
            ).delete(synchronize_session=False)
            db.commit()
            if deleted:
                logger.info(f"期限切れロック削除: {deleted}件")
            return deleted
        finally:
            db.close()


def _owned_by(lock: Optional[DeliveryLock], instance_id: str, attempt: Optional[int]) -> bool:
    if lock is None or lock.status != "processing" or lock.owner_instance_id != instance_id:
        return False
    return attempt is None or lock.attempt == attempt
