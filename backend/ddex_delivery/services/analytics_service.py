"""配信集計"""
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from ddex_delivery.models.delivery_job import DeliveryJob, JOB_STATUSES
from ddex_delivery.models.delivery_target import DeliveryTarget


def get_delivery_analytics(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
) -> dict:
    """
    期間内のジョブを集計する。

    Returns:
        {
            "total": 件数,
            "by_status": {status: 件数},
            "by_target": {target_id: {name, total, completed, failed}},
            "by_protocol": {protocol: 件数},
            "average_delivery_time_seconds": 完了ジョブの平均所要時間,
            "success_rate": 完了 / 全件 (%)
        }
    """
    q = db.query(DeliveryJob, DeliveryTarget).join(DeliveryTarget, DeliveryTarget.id == DeliveryJob.target_id)
    if start:
        q = q.filter(DeliveryJob.created_at >= start)
    if end:
        q = q.filter(DeliveryJob.created_at <= end)
    if tenant_id:
        q = q.filter(DeliveryJob.tenant_id == tenant_id)

    by_status = {s: 0 for s in JOB_STATUSES}
    by_target = {}
    by_protocol = {}
    durations = []
    total = 0

    for job, target in q.all():
        total += 1
        by_status[job.status] = by_status.get(job.status, 0) + 1

        t = by_target.setdefault(target.id, {"name": target.name, "total": 0, "completed": 0, "failed": 0})
        t["total"] += 1
        if job.status in ("completed", "failed"):
            t[job.status] += 1

        by_protocol[target.protocol] = by_protocol.get(target.protocol, 0) + 1

        if job.status == "completed" and job.total_duration_ms is not None:
            durations.append(job.total_duration_ms)

    average = round(sum(durations) / len(durations) / 1000, 2) if durations else 0
    success_rate = round(by_status["completed"] / total * 100, 1) if total else 0

    return {
        "total": total,
        "by_status": by_status,
        "by_target": by_target,
        "by_protocol": by_protocol,
        "average_delivery_time_seconds": average,
        "success_rate": success_rate,
    }
