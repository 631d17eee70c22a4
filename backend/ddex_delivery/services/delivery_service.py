"""配信オーケストレーションサービス

ジョブ状態遷移:
    queued → processing → completed / failed
    processing → queued   (リトライ予約)
    queued → cancelled    (queued の間のみ。転送開始後は中断しない)

1ジョブを同時に処理できるのは冪等ロックを取得した1 Workerのみ。
監査ログ・通知の失敗は握りつぶしてプロセスログに残し、配信結果には影響させない。
"""
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ddex_delivery.core.clock import now_jst, to_jst_naive
from ddex_delivery.core.config import settings
from ddex_delivery.core.database import SessionLocal
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_attempt import DeliveryAttempt
from ddex_delivery.models.delivery_history import DeliveryHistory
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_target import DeliveryTarget
from ddex_delivery.schemas.delivery import (
    DeliveryPackage, DeliveryResult, Receipt, TargetSpec, TriggerDeliveryRequest, TriggerResult, TriggerCode,
)
from ddex_delivery.services.asset_store import HttpAssetStore
from ddex_delivery.services.ddex_naming import validate_upc
from ddex_delivery.services.delivery_log import DeliveryLogWriter
from ddex_delivery.services.errors import LockContention, PermanentFailure, ValidationError
from ddex_delivery.services.idempotency import generate_idempotency_key
from ddex_delivery.services.lock_manager import LockManager
from ddex_delivery.services.notification_service import NotificationSink, DatabaseNotificationSink
from ddex_delivery.services.package_builder import PackageBuilder
from ddex_delivery.services.release_store import FirestoreReleaseStore, ReleaseStore
from ddex_delivery.services.retry_policy import RetryPolicy
from ddex_delivery.services.target_service import load_target
from ddex_delivery.services.transports.registry import TransportRegistry, build_default_registry

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


class ProcessOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    REPLAYED = "replayed"  # 配信済み: キャッシュ結果を返却 (転送なし)
    LOCKED = "locked"  # 他Workerが処理中
    SKIPPED = "skipped"  # 処理対象外 (キャンセル済み等)
    SUPERSEDED = "superseded"  # 転送中にロックを失った (期限切れで他Workerが引き継ぎ)


class ProcessResult(BaseModel):
    job_id: int
    outcome: ProcessOutcome
    receipt: Optional[dict] = None
    error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


class DeliveryOrchestrator:
    """配信ジョブ1件の実行 (ロック → パッケージ作成 → 転送 → 記録 → 通知)"""

    def __init__(
        self,
        package_builder: PackageBuilder,
        notification_sink: NotificationSink,
        registry: TransportRegistry = None,
        lock_manager: LockManager = None,
        retry_policy: RetryPolicy = None,
        log_writer: DeliveryLogWriter = None,
        session_factory=SessionLocal,
        clock: Callable[[], datetime] = now_jst,
    ):
        self.package_builder = package_builder
        self.notification_sink = notification_sink
        self.registry = registry or build_default_registry()
        self.session_factory = session_factory
        self.clock = clock
        self.lock_manager = lock_manager or LockManager(session_factory, clock=clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self.log = log_writer or DeliveryLogWriter(session_factory)

    def process_job(self, job_id: int) -> ProcessResult:
        db = self.session_factory()
        try:
            job = db.get(DeliveryJob, job_id)
            if job is None:
                logger.warning(f"ジョブが見つかりません: job_id={job_id}")
                return ProcessResult(job_id=job_id, outcome=ProcessOutcome.SKIPPED, error="job not found")
            if job.status == "completed":
                return ProcessResult(job_id=job_id, outcome=ProcessOutcome.REPLAYED, receipt=job.receipt)
            if job.status != "queued":
                logger.info(f"処理対象外: job_id={job_id}, status={job.status}")
                return ProcessResult(job_id=job_id, outcome=ProcessOutcome.SKIPPED)

            try:
                lock = self.lock_manager.require(job.idempotency_key)
            except LockContention:
                # 他Workerが処理中: ジョブには触れない
                return ProcessResult(job_id=job_id, outcome=ProcessOutcome.LOCKED)

            if not lock.acquired:
                return self._complete_from_cache(db, job, lock.result)
            return self._execute(db, job, lock.attempt)
        finally:
            db.close()

    def _complete_from_cache(self, db: Session, job: DeliveryJob, cached: Optional[dict]) -> ProcessResult:
        now = self.clock()
        job.status = "completed"
        job.receipt = cached
        job.completed_at = now
        job.updated_at = now
        db.commit()
        self.log.info(
            job.id, "completion", "Delivery already completed; returning cached result",
            {"idempotency_key": job.idempotency_key},
        )
        return ProcessResult(job_id=job.id, outcome=ProcessOutcome.REPLAYED, receipt=cached)

    def _execute(self, db: Session, job: DeliveryJob, lock_attempt: int) -> ProcessResult:
        job_id = job.id
        key = job.idempotency_key
        started = time.monotonic()
        started_at = self.clock()

        # queued の場合のみ processing へ (直前のキャンセルと競合しないよう条件付き更新)
        claimed = db.query(DeliveryJob).filter(
            DeliveryJob.id == job_id,
            DeliveryJob.status == "queued",
        ).update({"status": "processing", "started_at": started_at, "updated_at": started_at}, synchronize_session=False)
        db.commit()
        if not claimed:
            self._release_lock(key, lock_attempt, "failed", {"error": "job left queued state before start"})
            return ProcessResult(job_id=job_id, outcome=ProcessOutcome.SKIPPED)
        db.refresh(job)

        self.log.info(
            job_id, "initialization", "Starting delivery processing",
            {"lock_attempt": lock_attempt, "instance_id": self.lock_manager.instance_id, "idempotency_key": key},
        )

        target = None
        try:
            target = load_target(db, job.target_id)
            adapter = self.registry.resolve(target)
            self.log.info(
                job_id, "target_configuration", f"Target: {target.name} ({target.protocol.value})",
                {"protocol": target.protocol.value, "type": target.type.value},
            )

            pkg = self.package_builder.build(
                job,
                target,
                resolve_assets=adapter.transfers_media,
                on_warning=lambda message, details: self.log.warning(job_id, "package_preparation", message, details),
            )
            self.log.info(
                job_id, "package_preparation", f"Package prepared with {len(pkg.files)} files",
                {"upc": pkg.upc, "files": [f.name for f in pkg.files]},
            )

            self.log.info(job_id, "delivery_execution", f"Starting {target.protocol.value} delivery to {target.name}")
            result = adapter.deliver(target, pkg)
        except Exception as e:
            return self._handle_failure(db, job_id, lock_attempt, e, started_at, target)

        return self._handle_success(db, job_id, lock_attempt, target, pkg, result, started)

    def _handle_success(
        self,
        db: Session,
        job_id: int,
        lock_attempt: int,
        target: TargetSpec,
        pkg: DeliveryPackage,
        result: DeliveryResult,
        started: float,
    ) -> ProcessResult:
        now = self.clock()
        duration_ms = int((time.monotonic() - started) * 1000)
        job = db.get(DeliveryJob, job_id)
        db.refresh(job)
        superseded = self._check_ownership(job, lock_attempt)
        if superseded:
            return superseded

        receipt = Receipt(
            acknowledgment=result.acknowledgment or "Delivery completed successfully",
            timestamp=now,
            files=result.files,
            message_sub_type=pkg.metadata.message_sub_type,
            dsp_message_id=result.dsp_message_id,
            acknowledgment_id=result.acknowledgment_id,
            delivery_id=job_id,
            bytes_transferred=result.bytes_transferred,
        ).model_dump(mode="json")
        self.log.info(
            job_id, "receipt_generation", "Delivery receipt generated",
            {"files": len(result.files), "bytes_transferred": result.bytes_transferred},
        )

        job.status = "completed"
        job.receipt = receipt
        job.completed_at = now
        job.updated_at = now
        job.total_duration_ms = duration_ms
        job.last_error = None
        job.error = None
        if not job.test_mode:
            db.add(DeliveryHistory(
                job_id=job_id,
                release_id=job.release_id,
                target_id=target.id,
                target_name=target.name,
                tenant_id=job.tenant_id,
                message_type=job.message_type,
                message_sub_type=job.message_sub_type,
                ern_version=pkg.ern_version,
                message_id=pkg.metadata.message_id,
                status="completed",
                receipt={
                    "acknowledgment": receipt["acknowledgment"],
                    "files": receipt["files"],
                    "bytes_transferred": receipt["bytes_transferred"],
                },
                delivered_at=now,
            ))
        db.commit()

        self.log.success(
            job_id, "completion", f"Delivery completed successfully in {duration_ms / 1000:.1f}s",
            {"bytes_transferred": result.bytes_transferred, "protocol": result.protocol},
            duration_ms,
        )
        self._notify(job, "success", {
            "targetName": target.name,
            "releaseTitle": pkg.release_title,
            "messageSubType": pkg.metadata.message_sub_type.value,
            "receipt": receipt,
        })
        self._release_lock(job.idempotency_key, lock_attempt, "completed", receipt)
        return ProcessResult(job_id=job_id, outcome=ProcessOutcome.COMPLETED, receipt=receipt)

    def _handle_failure(
        self,
        db: Session,
        job_id: int,
        lock_attempt: int,
        exc: Exception,
        started_at: datetime,
        target: Optional[TargetSpec],
    ) -> ProcessResult:
        db.rollback()
        now = self.clock()
        job = db.get(DeliveryJob, job_id)
        superseded = self._check_ownership(job, lock_attempt)
        if superseded:
            return superseded
        error_msg = str(exc)[:MAX_ERROR_LENGTH] or type(exc).__name__

        previous = db.query(func.count(DeliveryAttempt.id)).filter(
            DeliveryAttempt.job_id == job_id,
            DeliveryAttempt.round == job.redelivery_round,
        ).scalar() or 0
        attempt_number = previous + 1
        db.add(DeliveryAttempt(
            job_id=job_id,
            round=job.redelivery_round,
            attempt_number=attempt_number,
            status="failed",
            error=error_msg,
            error_type=type(exc).__name__,
            start_time=started_at,
            end_time=now,
        ))
        logger.error(f"配信エラー: job_id={job_id}, attempt={attempt_number} - {error_msg}")
        self.log.error(
            job_id, "error_handling", f"Delivery failed: {error_msg}",
            {"attempt": attempt_number, "error_type": type(exc).__name__, "protocol": getattr(exc, "protocol", None)},
        )

        notify_base = {
            "targetName": target.name if target else None,
            "messageSubType": job.message_sub_type,
        }
        max_attempts = self.retry_policy.max_attempts
        fatal = isinstance(exc, ValidationError)
        delay = None if fatal else self.retry_policy.next_delay(attempt_number)

        if delay is not None:
            job.status = "queued"
            job.scheduled_at = now + delay
            job.last_error = error_msg
            job.updated_at = now
            db.commit()
            minutes = int(delay.total_seconds() // 60)
            self.log.warning(
                job_id, "retry_scheduled", f"Scheduling retry {attempt_number}/{max_attempts} in {minutes} minutes",
                {"attempt": attempt_number, "next_attempt_at": job.scheduled_at.isoformat()},
            )
            self._notify(job, "retry", {**notify_base, "attemptNumber": attempt_number, "nextRetryIn": minutes, "error": error_msg})
            self._release_lock(job.idempotency_key, lock_attempt, "failed", {"error": error_msg, "attempt": attempt_number})
            return ProcessResult(
                job_id=job_id,
                outcome=ProcessOutcome.RETRY_SCHEDULED,
                error=error_msg,
                next_attempt_at=job.scheduled_at,
            )

        if fatal:
            final_error = error_msg
            step, message = "validation", f"Delivery rejected, not retrying: {error_msg}"
        else:
            final_error = str(PermanentFailure(attempt_number, error_msg))
            step, message = "max_retries", f"Max retries reached ({attempt_number}/{max_attempts}). Delivery failed permanently"

        job.status = "failed"
        job.failed_at = now
        job.updated_at = now
        job.error = final_error
        job.last_error = error_msg
        db.commit()
        self.log.error(job_id, step, message, {"attempts": attempt_number})
        self._notify(job, "failed", {**notify_base, "error": final_error, "attempts": attempt_number})
        self._release_lock(job.idempotency_key, lock_attempt, "failed", {"error": final_error, "attempt": attempt_number})
        return ProcessResult(job_id=job_id, outcome=ProcessOutcome.FAILED, error=final_error)

    def _check_ownership(self, job: DeliveryJob, lock_attempt: int) -> Optional[ProcessResult]:
        """ジョブがprocessingのまま、かつロックをこの試行で保持している場合のみ結果を書き込める"""
        if job.status == "processing" and self.lock_manager.holds(job.idempotency_key, lock_attempt):
            return None
        logger.warning(
            f"ロック喪失のため結果を破棄: job_id={job.id}, status={job.status}, lock_attempt={lock_attempt}"
        )
        self.log.warning(
            job.id, "lock_lost", "Delivery lock was lost during processing; leaving the job to its current owner",
            {"lock_attempt": lock_attempt, "status": job.status},
        )
        return ProcessResult(job_id=job.id, outcome=ProcessOutcome.SUPERSEDED, error="delivery lock lost")

    def _notify(self, job: DeliveryJob, notification_type: str, data: dict):
        try:
            self.notification_sink.send(job, notification_type, data)
        except Exception as e:
            logger.error(f"配信通知送信失敗: job_id={job.id}, type={notification_type} - {e}")

    def _release_lock(self, key: str, lock_attempt: int, status: str, result: dict):
        # 解放できなくてもTTL経過で再取得可能になる
        try:
            self.lock_manager.release(key, status, result, attempt=lock_attempt)
        except Exception as e:
            logger.error(f"ロック解放失敗: {key} - {e}")


def build_orchestrator(session_factory=SessionLocal, release_store: ReleaseStore = None) -> DeliveryOrchestrator:
    """Worker用の既定構成"""
    return DeliveryOrchestrator(
        package_builder=PackageBuilder(release_store or FirestoreReleaseStore(), HttpAssetStore()),
        notification_sink=DatabaseNotificationSink(session_factory),
        registry=build_default_registry(),
        lock_manager=LockManager(session_factory),
        session_factory=session_factory,
    )


# --- 受付・キャンセル (API用) ---

def _log_writer_for(db: Session) -> DeliveryLogWriter:
    return DeliveryLogWriter(sessionmaker(bind=db.get_bind(), autoflush=False))


def _duplicate(job: DeliveryJob) -> TriggerResult:
    return TriggerResult(
        code=TriggerCode.DUPLICATE,
        message=f"Delivery already exists ({job.status})",
        job_id=job.id,
        idempotency_key=job.idempotency_key,
        status=job.status,
        receipt=job.receipt if job.status == "completed" else None,
    )


def trigger_delivery(
    db: Session,
    request: TriggerDeliveryRequest,
    release_store: ReleaseStore = None,
    clock: Callable[[], datetime] = now_jst,
) -> TriggerResult:
    """
    配信を受け付けてキューに積む。

    accepted  : 新規ジョブ (または失敗/キャンセル済みジョブの再配信) をqueuedで登録
    duplicate : 同じ冪等キーのジョブが既にある
    rejected  : 配信先不在・非アクティブ・UPC形式不正・リリース不在
    error     : 想定外のエラー
    """
    try:
        target = db.get(DeliveryTarget, request.target_id)
        if target is None:
            return TriggerResult(code=TriggerCode.REJECTED, message=f"Delivery target not found: {request.target_id}")
        if not target.active:
            return TriggerResult(code=TriggerCode.REJECTED, message=f"Delivery target is inactive: {target.name}")
        if request.upc:
            try:
                validate_upc(request.upc)
            except ValidationError as e:
                return TriggerResult(code=TriggerCode.REJECTED, message=str(e))
        if release_store is not None and release_store.get_release(request.release_id) is None:
            return TriggerResult(code=TriggerCode.REJECTED, message=f"Release not found: {request.release_id}")

        key = generate_idempotency_key(
            request.release_id,
            request.target_id,
            request.message_type,
            request.message_sub_type.value,
            request.ern_message_id,
        )
        log = _log_writer_for(db)
        now = clock()
        scheduled_at = to_jst_naive(request.scheduled_at) or now
        asset_urls = request.asset_urls.model_dump() if request.asset_urls else None

        existing = db.query(DeliveryJob).filter(DeliveryJob.idempotency_key == key).first()
        if existing and existing.status not in ("failed", "cancelled"):
            return _duplicate(existing)

        if existing:
            # 失敗/キャンセル済みの同一配信: 新しいラウンドとして再キュー
            job = existing
            job.redelivery_round += 1
            job.status = "queued"
            job.ern_xml = request.ern_xml
            job.upc = request.upc
            job.asset_urls = asset_urls
            job.priority = request.priority
            job.test_mode = request.test_mode
            job.scheduled_at = scheduled_at
            job.error = None
            job.last_error = None
            job.failed_at = None
            job.cancelled_at = None
            job.updated_at = now
            db.commit()
            log.info(job.id, "queued", f"Redelivery queued (round {job.redelivery_round})")
        else:
            job = DeliveryJob(
                release_id=request.release_id,
                target_id=request.target_id,
                idempotency_key=key,
                tenant_id=request.tenant_id,
                message_type=request.message_type,
                message_sub_type=request.message_sub_type.value,
                ern_message_id=request.ern_message_id,
                ern_version=request.ern_version or settings.ERN_VERSION,
                ern_xml=request.ern_xml,
                upc=request.upc,
                asset_urls=asset_urls,
                status="queued",
                priority=request.priority,
                test_mode=request.test_mode,
                scheduled_at=scheduled_at,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # 同時リクエストに先を越された
                db.rollback()
                return _duplicate(db.query(DeliveryJob).filter(DeliveryJob.idempotency_key == key).one())
            db.refresh(job)
            log.info(job.id, "queued", "Delivery queued", {"target": target.name, "idempotency_key": key})

        logger.info(f"配信受付: job_id={job.id}, key={key}")
        return TriggerResult(
            code=TriggerCode.ACCEPTED,
            message="Delivery queued",
            job_id=job.id,
            idempotency_key=key,
            status="queued",
        )
    except Exception as e:
        db.rollback()
        logger.error(f"配信受付エラー: {e}")
        return TriggerResult(code=TriggerCode.ERROR, message=str(e))


def cancel_delivery(db: Session, job_id: int, clock: Callable[[], datetime] = now_jst) -> Optional[dict]:
    """queued のジョブのみキャンセル可能。ジョブが無ければNone"""
    job = db.get(DeliveryJob, job_id)
    if job is None:
        return None
    now = clock()
    updated = db.query(DeliveryJob).filter(
        DeliveryJob.id == job_id,
        DeliveryJob.status == "queued",
    ).update({"status": "cancelled", "cancelled_at": now, "updated_at": now}, synchronize_session=False)
    db.commit()
    db.refresh(job)
    if not updated:
        return {
            "cancelled": False,
            "status": job.status,
            "message": f"Only queued deliveries can be cancelled (current: {job.status})",
        }
    _log_writer_for(db).info(job_id, "cancellation", "Delivery cancelled")
    logger.info(f"配信キャンセル: job_id={job_id}")
    return {"cancelled": True, "status": job.status, "message": "Delivery cancelled"}
