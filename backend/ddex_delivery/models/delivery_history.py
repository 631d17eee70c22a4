from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, func
from ddex_delivery.core.database import Base


class DeliveryHistory(Base):
    """本番配信 (test_mode=False) の完了履歴"""
    __tablename__ = "delivery_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("delivery_jobs.id", ondelete="SET NULL"), nullable=True, index=True)
    release_id = Column(String(128), nullable=False, index=True)
    target_id = Column(Integer, nullable=False, index=True)
    target_name = Column(String(255), nullable=True)
    tenant_id = Column(String(128), nullable=True)
    message_type = Column(String(64), nullable=False)
    message_sub_type = Column(String(20), nullable=False)
    ern_version = Column(String(16), nullable=False)
    message_id = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default="completed")
    receipt = Column(JSON, nullable=True, comment="acknowledgment/files/bytes_transferred のみ")
    delivered_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
