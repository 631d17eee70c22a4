from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, func
from ddex_delivery.core.database import Base


class DeliveryLog(Base):
    """配信の監査ログ。INSERTのみで更新・削除はしない (id順 = 記録順)"""
    __tablename__ = "delivery_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("delivery_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(String(20), nullable=False, comment="info/success/warning/error")
    step = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
