"""管理: Worker緊急停止"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ddex_delivery.core.logging import get_logger
from ddex_delivery.routers.deps import require_api_key
from ddex_delivery.worker.throttle_manager import check_emergency_stop, set_emergency_stop

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin/worker", tags=["admin-worker"])


class EmergencyStopUpdate(BaseModel):
    active: bool


@router.get("/emergency-stop")
async def get_emergency_stop(_=Depends(require_api_key)):
    return {"active": check_emergency_stop()}


@router.post("/emergency-stop")
async def update_emergency_stop(data: EmergencyStopUpdate, _=Depends(require_api_key)):
    """緊急停止の設定/解除 (実行中の転送は中断しない)"""
    set_emergency_stop(data.active)
    return {"active": data.active}
