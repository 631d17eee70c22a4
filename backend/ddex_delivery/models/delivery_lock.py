from sqlalchemy import Column, Integer, String, DateTime, JSON
from ddex_delivery.core.database import Base


class DeliveryLock(Base):
    """
    冪等実行ロック (lock_id = 冪等キー)

    version:
        楽観ロック用。UPDATE は WHERE version = :読み込み時の値 で発行され、
        他プロセスが先に更新していれば StaleDataError になる。
    """
    __tablename__ = "delivery_locks"

    lock_id = Column(String(512), primary_key=True)
    status = Column(String(20), nullable=False, comment="processing/completed/failed")
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    released_at = Column(DateTime, nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    owner_instance_id = Column(String(255), nullable=True)
    result = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
