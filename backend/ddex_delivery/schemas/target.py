from typing import Optional
from pydantic import BaseModel, Field

from ddex_delivery.schemas.delivery import Protocol, TargetType


class TargetCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    protocol: Protocol
    type: TargetType = TargetType.DSP
    connection: dict  # 平文の接続設定 (保存時に暗号化)
    config: dict = Field(default_factory=dict)
    active: bool = True


class TargetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[TargetType] = None
    connection: Optional[dict] = None  # 更新する場合のみ
    config: Optional[dict] = None
    active: Optional[bool] = None
