"""配信先 (DSP / アグリゲーター / テスト環境)"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Enum as SAEnum, func
from ddex_delivery.core.database import Base

PROTOCOLS = ("FTP", "SFTP", "S3", "Azure", "API", "Storage")
TARGET_TYPES = ("DSP", "Aggregator", "Test")


class DeliveryTarget(Base):
    """
    配信先

    connection_enc:
        プロトコル別の接続設定 (host/credentials等) をJSON化してAES-GCM暗号化したもの。
        平文はservices.target_serviceでのみ扱う。
    config:
        distributorId / apiKey など配信先固有の追加設定 (機密でないもの)
    """
    __tablename__ = "delivery_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True, comment="配信先名")
    protocol = Column(SAEnum(*PROTOCOLS, name="delivery_protocol"), nullable=False)
    type = Column(SAEnum(*TARGET_TYPES, name="delivery_target_type"), nullable=False, default="DSP")
    connection_enc = Column(Text, nullable=False, comment="暗号化された接続設定JSON")
    config = Column(JSON, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
