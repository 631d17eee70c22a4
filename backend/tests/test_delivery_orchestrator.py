from datetime import timedelta

from ddex_delivery.models.delivery_attempt import DeliveryAttempt
from ddex_delivery.models.delivery_history import DeliveryHistory
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_lock import DeliveryLock
from ddex_delivery.models.delivery_log import DeliveryLog
from ddex_delivery.models.notification import Notification
from ddex_delivery.schemas.delivery import TriggerCode
from ddex_delivery.services.delivery_service import (
    ProcessOutcome, trigger_delivery, cancel_delivery,
)
from ddex_delivery.services.lock_manager import LockManager
from ddex_delivery.services.notification_service import DatabaseNotificationSink

from conftest import BASE_TIME, FixedClock, RecordingSink, RecordingTransport, sample_release, trigger_request


def queue_job(db, clock, target, **overrides):
    result = trigger_delivery(db, trigger_request(target.id, **overrides), clock=clock)
    assert result.code == TriggerCode.ACCEPTED, result.message
    return result.job_id


def reload(db, job_id):
    db.expire_all()
    return db.get(DeliveryJob, job_id)


# --- 正常系 ---

def test_successful_delivery(db, clock, make_target, orchestrator_factory):
    target = make_target()
    job_id = queue_job(db, clock, target)
    transport = RecordingTransport()
    sink = RecordingSink()

    result = orchestrator_factory(transport, sink).process_job(job_id)

    assert result.outcome == ProcessOutcome.COMPLETED
    job = reload(db, job_id)
    assert job.status == "completed"
    assert job.completed_at == BASE_TIME
    assert job.receipt["delivery_id"] == job_id
    assert job.receipt["message_sub_type"] == "Initial"
    assert [f["name"] for f in job.receipt["files"]][0] == "ERN_0001.xml"
    assert job.receipt["bytes_transferred"] == sum(f.size for f in transport.calls[0].files)

    history = db.query(DeliveryHistory).filter(DeliveryHistory.job_id == job_id).all()
    assert len(history) == 1
    assert history[0].target_name == target.name
    assert history[0].message_id == "ERN_0001"

    assert sink.types == ["success"]
    assert db.get(DeliveryLock, job.idempotency_key).status == "completed"

    steps = [log.step for log in db.query(DeliveryLog).filter(DeliveryLog.job_id == job_id).order_by(DeliveryLog.id)]
    assert steps == [
        "queued", "initialization", "target_configuration", "package_preparation",
        "delivery_execution", "receipt_generation", "completion",
    ]
    completion = db.query(DeliveryLog).filter(DeliveryLog.step == "completion").one()
    assert completion.level == "success"
    assert completion.message.startswith("Delivery completed successfully in ")


def test_test_mode_skips_history(db, clock, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target(), test_mode=True)
    assert orchestrator_factory().process_job(job_id).outcome == ProcessOutcome.COMPLETED
    assert db.query(DeliveryHistory).count() == 0


def test_takedown_sends_only_ern(db, clock, make_target, orchestrator_factory, asset_store):
    job_id = queue_job(db, clock, make_target(), message_sub_type="Takedown")
    transport = RecordingTransport()
    orchestrator_factory(transport).process_job(job_id)
    assert [f.name for f in transport.calls[0].files] == ["ERN_0001.xml"]
    assert asset_store.downloads == []


# --- リトライ ---

def test_retry_schedule_then_permanent_failure(db, clock, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    transport = RecordingTransport(failures=3)
    sink = RecordingSink()
    orchestrator = orchestrator_factory(transport, sink)

    first = orchestrator.process_job(job_id)
    assert first.outcome == ProcessOutcome.RETRY_SCHEDULED
    job = reload(db, job_id)
    assert job.status == "queued"
    assert job.scheduled_at == BASE_TIME + timedelta(minutes=5)
    assert "connection refused" in job.last_error

    clock.advance(minutes=5)
    second = orchestrator.process_job(job_id)
    assert second.outcome == ProcessOutcome.RETRY_SCHEDULED
    assert reload(db, job_id).scheduled_at == clock.now + timedelta(minutes=15)

    clock.advance(minutes=15)
    third = orchestrator.process_job(job_id)
    assert third.outcome == ProcessOutcome.FAILED

    job = reload(db, job_id)
    assert job.status == "failed"
    assert job.failed_at == clock.now
    assert job.error.startswith("Delivery failed after 3 attempt(s): FTP transfer failed")
    attempts = db.query(DeliveryAttempt).filter(DeliveryAttempt.job_id == job_id).order_by(DeliveryAttempt.attempt_number).all()
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert all(a.error_type == "TransportError" for a in attempts)
    assert len(transport.calls) == 3
    assert sink.types == ["retry", "retry", "failed"]
    assert sink.sent[0][2]["nextRetryIn"] == 5
    assert sink.sent[1][2]["nextRetryIn"] == 15

    warning = db.query(DeliveryLog).filter(DeliveryLog.step == "retry_scheduled").order_by(DeliveryLog.id).first()
    assert warning.message == "Scheduling retry 1/3 in 5 minutes"


def test_retry_then_success(db, clock, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    orchestrator = orchestrator_factory(RecordingTransport(failures=1))

    assert orchestrator.process_job(job_id).outcome == ProcessOutcome.RETRY_SCHEDULED
    clock.advance(minutes=5)
    assert orchestrator.process_job(job_id).outcome == ProcessOutcome.COMPLETED

    job = reload(db, job_id)
    assert job.status == "completed"
    assert job.last_error is None
    assert db.get(DeliveryLock, job.idempotency_key).attempt == 2


def test_validation_error_is_not_retried(db, clock, make_target, orchestrator_factory, release_store):
    release_store.releases.clear()
    job_id = queue_job(db, clock, make_target())
    transport = RecordingTransport()
    sink = RecordingSink()

    result = orchestrator_factory(transport, sink).process_job(job_id)

    assert result.outcome == ProcessOutcome.FAILED
    assert "Release not found" in result.error
    job = reload(db, job_id)
    assert job.status == "failed"
    assert db.query(DeliveryAttempt).count() == 1
    assert transport.calls == []
    assert sink.types == ["failed"]


def test_inactive_target_at_execution_is_terminal(db, clock, make_target, orchestrator_factory):
    target = make_target()
    job_id = queue_job(db, clock, target)
    target.active = False
    db.commit()

    result = orchestrator_factory().process_job(job_id)
    assert result.outcome == ProcessOutcome.FAILED
    assert "inactive" in result.error


# --- 冪等性・ロック ---

def test_completed_job_is_replayed_without_io(db, clock, make_target, orchestrator_factory, release_store, asset_store):
    job_id = queue_job(db, clock, make_target())
    transport = RecordingTransport()
    orchestrator = orchestrator_factory(transport)
    first = orchestrator.process_job(job_id)
    calls = release_store.calls
    downloads = len(asset_store.downloads)

    again = orchestrator.process_job(job_id)

    assert again.outcome == ProcessOutcome.REPLAYED
    assert again.receipt == first.receipt
    assert len(transport.calls) == 1
    assert release_store.calls == calls
    assert len(asset_store.downloads) == downloads


def test_completed_lock_short_circuits(db, clock, make_target, orchestrator_factory, lock_manager):
    job_id = queue_job(db, clock, make_target())
    key = reload(db, job_id).idempotency_key
    lock_manager.acquire(key)
    lock_manager.release(key, "completed", {"acknowledgment": "cached"})
    transport = RecordingTransport()

    result = orchestrator_factory(transport).process_job(job_id)

    assert result.outcome == ProcessOutcome.REPLAYED
    assert result.receipt == {"acknowledgment": "cached"}
    assert transport.calls == []
    job = reload(db, job_id)
    assert job.status == "completed"
    assert job.receipt == {"acknowledgment": "cached"}


def test_locked_job_is_left_untouched(db, clock, session_factory, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    key = reload(db, job_id).idempotency_key
    LockManager(session_factory, instance_id="worker-2", clock=clock).acquire(key)
    transport = RecordingTransport()

    result = orchestrator_factory(transport).process_job(job_id)

    assert result.outcome == ProcessOutcome.LOCKED
    assert reload(db, job_id).status == "queued"
    assert db.query(DeliveryAttempt).count() == 0
    assert transport.calls == []


class TakeoverTransport(RecordingTransport):
    """転送中に別Workerが期限切れロックを引き継ぐ状況を再現する"""

    def __init__(self, on_deliver, failures: int = 0):
        super().__init__(failures=failures)
        self.on_deliver = on_deliver

    def _deliver(self, target, pkg, deadline):
        self.on_deliver()
        return super()._deliver(target, pkg, deadline)


def _takeover(session_factory, db, job_id, failures=0):
    key = reload(db, job_id).idempotency_key
    other = LockManager(
        session_factory, instance_id="worker-2", clock=FixedClock(BASE_TIME + timedelta(minutes=11)),
    )
    taken = []
    return key, taken, TakeoverTransport(lambda: taken.append(other.acquire(key)), failures=failures)


def test_success_after_lock_takeover_is_discarded(db, clock, session_factory, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    key, taken, transport = _takeover(session_factory, db, job_id)
    sink = RecordingSink()

    result = orchestrator_factory(transport, sink).process_job(job_id)

    assert taken[0].acquired
    assert result.outcome == ProcessOutcome.SUPERSEDED
    job = reload(db, job_id)
    assert job.status == "processing"
    assert job.receipt is None
    assert db.query(DeliveryHistory).count() == 0
    assert sink.sent == []
    lock = db.get(DeliveryLock, key)
    assert lock.status == "processing"
    assert lock.owner_instance_id == "worker-2"
    assert db.query(DeliveryLog).filter(DeliveryLog.step == "lock_lost").count() == 1


def test_failure_after_lock_takeover_is_discarded(db, clock, session_factory, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    key, taken, transport = _takeover(session_factory, db, job_id, failures=1)

    result = orchestrator_factory(transport).process_job(job_id)

    assert result.outcome == ProcessOutcome.SUPERSEDED
    assert reload(db, job_id).status == "processing"
    assert db.query(DeliveryAttempt).count() == 0
    assert db.get(DeliveryLock, key).owner_instance_id == "worker-2"


def test_notification_failure_does_not_change_outcome(db, clock, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target())
    result = orchestrator_factory(sink=RecordingSink(fail=True)).process_job(job_id)
    assert result.outcome == ProcessOutcome.COMPLETED
    assert reload(db, job_id).status == "completed"


def test_database_sink_records_notifications(db, clock, session_factory, make_target, orchestrator_factory):
    job_id = queue_job(db, clock, make_target(), tenant_id="label-a")
    orchestrator_factory(sink=DatabaseNotificationSink(session_factory)).process_job(job_id)
    notification = db.query(Notification).one()
    assert notification.type == "success"
    assert notification.tenant_id == "label-a"
    assert notification.data["receipt"]["delivery_id"] == job_id


def test_unknown_job_is_skipped(orchestrator_factory):
    assert orchestrator_factory().process_job(999).outcome == ProcessOutcome.SKIPPED


# --- 受付・キャンセル ---

def test_trigger_duplicate_returns_existing_job(db, clock, make_target):
    target = make_target()
    first = trigger_delivery(db, trigger_request(target.id), clock=clock)
    second = trigger_delivery(db, trigger_request(target.id), clock=clock)
    assert second.code == TriggerCode.DUPLICATE
    assert second.job_id == first.job_id
    assert db.query(DeliveryJob).count() == 1


def test_trigger_rejections(db, clock, make_target, release_store):
    inactive = make_target(active=False)
    active = make_target()

    assert trigger_delivery(db, trigger_request(9999), clock=clock).code == TriggerCode.REJECTED
    assert trigger_delivery(db, trigger_request(inactive.id), clock=clock).code == TriggerCode.REJECTED
    bad_upc = trigger_delivery(db, trigger_request(active.id, upc="12AB"), clock=clock)
    assert bad_upc.code == TriggerCode.REJECTED
    assert "Invalid UPC" in bad_upc.message
    missing = trigger_delivery(db, trigger_request(active.id, release_id="nope"), release_store=release_store, clock=clock)
    assert missing.code == TriggerCode.REJECTED
    assert db.query(DeliveryJob).count() == 0


def test_retrigger_after_failure_starts_new_round(db, clock, make_target, orchestrator_factory, release_store):
    release_store.releases.clear()
    target = make_target()
    job_id = queue_job(db, clock, target)
    orchestrator = orchestrator_factory()
    assert orchestrator.process_job(job_id).outcome == ProcessOutcome.FAILED

    release_store.releases["rel-1"] = sample_release()
    again = trigger_delivery(db, trigger_request(target.id), clock=clock)
    assert again.code == TriggerCode.ACCEPTED
    assert again.job_id == job_id
    job = reload(db, job_id)
    assert job.redelivery_round == 1
    assert job.error is None

    assert orchestrator.process_job(job_id).outcome == ProcessOutcome.COMPLETED


def test_cancel_only_while_queued(db, clock, make_target, orchestrator_factory):
    target = make_target()
    job_id = queue_job(db, clock, target)
    result = cancel_delivery(db, job_id, clock=clock)
    assert result["cancelled"] is True
    assert reload(db, job_id).status == "cancelled"
    assert orchestrator_factory().process_job(job_id).outcome == ProcessOutcome.SKIPPED

    done_id = queue_job(db, clock, target, ern_message_id="ERN_0002")
    orchestrator_factory().process_job(done_id)
    refused = cancel_delivery(db, done_id, clock=clock)
    assert refused["cancelled"] is False
    assert refused["status"] == "completed"

    assert cancel_delivery(db, 12345, clock=clock) is None
