"""配信API: 受付・状況確認・キャンセル"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ddex_delivery.core.clock import jst_iso
from ddex_delivery.core.database import get_db
from ddex_delivery.core.rate_limit import limiter, TRIGGER_RATE_LIMIT
from ddex_delivery.models.delivery_attempt import DeliveryAttempt
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_log import DeliveryLog
from ddex_delivery.models.delivery_target import DeliveryTarget
from ddex_delivery.routers.deps import require_api_key, get_release_store
from ddex_delivery.schemas.delivery import TriggerDeliveryRequest, TriggerCode
from ddex_delivery.services.delivery_service import trigger_delivery, cancel_delivery
from ddex_delivery.services.release_store import ReleaseStore

router = APIRouter(prefix="/api/deliveries", tags=["deliveries"])

TRIGGER_STATUS = {
    TriggerCode.ACCEPTED: 202,
    TriggerCode.DUPLICATE: 200,
    TriggerCode.REJECTED: 422,
    TriggerCode.ERROR: 500,
}


def _job_to_dict(job: DeliveryJob, target_name: str = None) -> dict:
    return {
        "id": job.id,
        "release_id": job.release_id,
        "target_id": job.target_id,
        "target_name": target_name,
        "idempotency_key": job.idempotency_key,
        "message_type": job.message_type,
        "message_sub_type": job.message_sub_type,
        "ern_message_id": job.ern_message_id,
        "status": job.status,
        "priority": job.priority,
        "test_mode": job.test_mode,
        "scheduled_at": jst_iso(job.scheduled_at),
        "started_at": jst_iso(job.started_at),
        "completed_at": jst_iso(job.completed_at),
        "failed_at": jst_iso(job.failed_at),
        "last_error": job.last_error,
        "error": job.error,
        "total_duration_ms": job.total_duration_ms,
        "created_at": jst_iso(job.created_at),
    }


def _get_job(db: Session, job_id: int) -> DeliveryJob:
    job = db.get(DeliveryJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="配信ジョブが見つかりません")
    return job


@router.post("")
@limiter.limit(TRIGGER_RATE_LIMIT)
async def create_delivery(
    request: Request,
    data: TriggerDeliveryRequest,
    db: Session = Depends(get_db),
    release_store: ReleaseStore = Depends(get_release_store),
    _=Depends(require_api_key),
):
    """配信受付 (配信先・リリースが無ければ rejected)"""
    result = trigger_delivery(db, data, release_store=release_store)
    return JSONResponse(status_code=TRIGGER_STATUS[result.code], content=result.model_dump(mode="json"))


@router.get("")
async def list_deliveries(
    status: Optional[str] = None,
    target_id: Optional[int] = None,
    release_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    _=Depends(require_api_key),
):
    """配信ジョブ一覧"""
    q = db.query(DeliveryJob, DeliveryTarget.name).outerjoin(DeliveryTarget, DeliveryTarget.id == DeliveryJob.target_id)
    if status:
        q = q.filter(DeliveryJob.status == status)
    if target_id:
        q = q.filter(DeliveryJob.target_id == target_id)
    if release_id:
        q = q.filter(DeliveryJob.release_id == release_id)

    total = q.count()
    rows = q.order_by(DeliveryJob.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return {"total": total, "deliveries": [_job_to_dict(job, name) for job, name in rows]}


@router.get("/{job_id}")
async def get_delivery(job_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信ジョブ詳細 (試行履歴を含む)"""
    job = _get_job(db, job_id)
    target = db.get(DeliveryTarget, job.target_id)
    attempts = db.query(DeliveryAttempt).filter(
        DeliveryAttempt.job_id == job_id,
    ).order_by(DeliveryAttempt.round, DeliveryAttempt.attempt_number).all()

    result = _job_to_dict(job, target.name if target else None)
    result["receipt"] = job.receipt
    result["attempts"] = [
        {
            "round": a.round,
            "attempt_number": a.attempt_number,
            "status": a.status,
            "error": a.error,
            "start_time": jst_iso(a.start_time),
            "end_time": jst_iso(a.end_time),
        }
        for a in attempts
    ]
    return result


@router.get("/{job_id}/logs")
async def get_delivery_logs(job_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信監査ログ (記録順)"""
    _get_job(db, job_id)
    logs = db.query(DeliveryLog).filter(DeliveryLog.job_id == job_id).order_by(DeliveryLog.id).all()
    return [
        {
            "timestamp": jst_iso(log.created_at),
            "level": log.level,
            "step": log.step,
            "message": log.message,
            "details": log.details,
            "duration_ms": log.duration_ms,
        }
        for log in logs
    ]


@router.get("/{job_id}/receipt")
async def get_delivery_receipt(job_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信受領証 (完了時のみ)"""
    job = _get_job(db, job_id)
    if not job.receipt:
        raise HTTPException(status_code=404, detail="受領証はまだありません")
    return job.receipt


@router.post("/{job_id}/cancel")
async def cancel(job_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信キャンセル (queued のみ)"""
    result = cancel_delivery(db, job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="配信ジョブが見つかりません")
    if not result["cancelled"]:
        raise HTTPException(status_code=409, detail=result["message"])
    return result
