from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from ddex_delivery.core.database import Base


class DeliveryAttempt(Base):
    """失敗した実行1回ごとの記録。attempt_number はラウンド内で単調増加"""
    __tablename__ = "delivery_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("delivery_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    round = Column(Integer, nullable=False, default=0)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="failed")
    error = Column(Text, nullable=True)
    error_type = Column(String(100), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("job_id", "round", "attempt_number", name="uq_attempt_job_round_number"),
    )
