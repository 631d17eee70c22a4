"""配信先の保存・読み込み・接続テスト"""
from sqlalchemy.orm import Session

from ddex_delivery.core.logging import get_logger
from ddex_delivery.core.security import encrypt_json, decrypt_json, mask_secrets
from ddex_delivery.models.delivery_target import DeliveryTarget
from ddex_delivery.schemas.delivery import TargetSpec
from ddex_delivery.schemas.target import TargetCreate, TargetUpdate
from ddex_delivery.services.errors import ValidationError
from ddex_delivery.services.transports.registry import TransportRegistry, build_default_registry

logger = get_logger(__name__)


def to_spec(target: DeliveryTarget) -> TargetSpec:
    return TargetSpec(
        id=target.id,
        name=target.name,
        protocol=target.protocol,
        type=target.type,
        connection=decrypt_json(target.connection_enc),
        config=target.config or {},
    )


def load_target(db: Session, target_id: int, require_active: bool = True) -> TargetSpec:
    target = db.get(DeliveryTarget, target_id)
    if target is None:
        raise ValidationError(f"Delivery target not found: {target_id}")
    if require_active and not target.active:
        raise ValidationError(f"Delivery target is inactive: {target.name}")
    return to_spec(target)


def create_target(db: Session, data: TargetCreate) -> DeliveryTarget:
    target = DeliveryTarget(
        name=data.name,
        protocol=data.protocol.value,
        type=data.type.value,
        connection_enc=encrypt_json(data.connection),
        config=data.config,
        active=data.active,
    )
    db.add(target)
    db.commit()
    db.refresh(target)
    logger.info(f"配信先作成: id={target.id}, name={target.name}, protocol={target.protocol}")
    return target


def update_target(db: Session, target: DeliveryTarget, data: TargetUpdate) -> DeliveryTarget:
    if data.name is not None:
        target.name = data.name
    if data.type is not None:
        target.type = data.type.value
    if data.connection is not None:
        target.connection_enc = encrypt_json(data.connection)
    if data.config is not None:
        target.config = data.config
    if data.active is not None:
        target.active = data.active
    db.commit()
    db.refresh(target)
    logger.info(f"配信先更新: id={target.id}")
    return target


def target_to_dict(target: DeliveryTarget, include_connection: bool = False) -> dict:
    result = {
        "id": target.id,
        "name": target.name,
        "protocol": target.protocol,
        "type": target.type,
        "config": target.config or {},
        "active": target.active,
        "created_at": target.created_at.isoformat() if target.created_at else None,
    }
    if include_connection:
        result["connection"] = mask_secrets(decrypt_json(target.connection_enc))
    return result


def check_target_connection(db: Session, target_id: int, registry: TransportRegistry = None) -> dict:
    """テストパッケージを1件送って接続を確認 (非アクティブな配信先も可)"""
    spec = load_target(db, target_id, require_active=False)
    adapter = (registry or build_default_registry()).resolve(spec)
    result = adapter.test_connection(spec)
    logger.info(f"接続テスト: target={spec.name}, success={result['success']}")
    return result
