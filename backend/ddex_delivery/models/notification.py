from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, func
from ddex_delivery.core.database import Base


class Notification(Base):
    """配信結果通知 (success/retry/failed)。メール等への展開は外部で行う"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("delivery_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    release_id = Column(String(128), nullable=True)
    target_name = Column(String(255), nullable=True)
    tenant_id = Column(String(128), nullable=True, index=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
