"""配信先管理"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ddex_delivery.core.database import get_db
from ddex_delivery.core.logging import get_logger
from ddex_delivery.models.delivery_job import DeliveryJob
from ddex_delivery.models.delivery_target import DeliveryTarget
from ddex_delivery.routers.deps import require_api_key
from ddex_delivery.schemas.target import TargetCreate, TargetUpdate
from ddex_delivery.services import target_service

logger = get_logger(__name__)

router = APIRouter(prefix="/api/targets", tags=["targets"])


def _get_target(db: Session, target_id: int) -> DeliveryTarget:
    target = db.get(DeliveryTarget, target_id)
    if not target:
        raise HTTPException(status_code=404, detail="配信先が見つかりません")
    return target


@router.get("")
async def list_targets(db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信先一覧 (接続情報は含めない)"""
    targets = db.query(DeliveryTarget).order_by(DeliveryTarget.name).all()
    return [target_service.target_to_dict(t) for t in targets]


@router.post("", status_code=201)
async def create_target(data: TargetCreate, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信先作成"""
    existing = db.query(DeliveryTarget).filter(DeliveryTarget.name == data.name).first()
    if existing:
        raise HTTPException(status_code=400, detail="この名前は既に使用されています")
    target = target_service.create_target(db, data)
    return {"id": target.id, "message": "配信先を作成しました"}


@router.get("/{target_id}")
async def get_target(target_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信先詳細 (機密項目は伏せ字)"""
    return target_service.target_to_dict(_get_target(db, target_id), include_connection=True)


@router.put("/{target_id}")
async def update_target(
    target_id: int,
    data: TargetUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_api_key),
):
    """配信先更新"""
    target = _get_target(db, target_id)
    if data.name and data.name != target.name:
        dup = db.query(DeliveryTarget).filter(DeliveryTarget.name == data.name).first()
        if dup:
            raise HTTPException(status_code=400, detail="この名前は既に使用されています")
    target_service.update_target(db, target, data)
    return {"message": "更新しました"}


@router.delete("/{target_id}")
async def delete_target(target_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """配信先削除 (ジョブが残っている場合は不可。無効化を使う)"""
    target = _get_target(db, target_id)
    job_count = db.query(DeliveryJob).filter(DeliveryJob.target_id == target_id).count()
    if job_count:
        raise HTTPException(status_code=409, detail=f"配信ジョブが{job_count}件あるため削除できません")
    db.delete(target)
    db.commit()
    logger.info(f"配信先削除: id={target_id}")
    return {"message": "削除しました"}


@router.post("/{target_id}/test")
async def run_target_connection_test(target_id: int, db: Session = Depends(get_db), _=Depends(require_api_key)):
    """接続テスト (テストファイル1件を送信)"""
    _get_target(db, target_id)
    return target_service.check_target_connection(db, target_id)
