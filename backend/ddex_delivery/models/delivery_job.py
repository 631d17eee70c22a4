from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Enum as SAEnum, ForeignKey, Index, func
from ddex_delivery.core.database import Base

JOB_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
MESSAGE_SUB_TYPES = ("Initial", "Update", "Takedown")


class DeliveryJob(Base):
    """
    配信ジョブ (1リリース × 1配信先 × 1メッセージ)

    status:
        queued     = 実行待ち (scheduled_at 以降にWorkerが取得)
        processing = 実行中 (ロック保持中)
        completed  = 完了 (receipt あり)
        failed     = 失敗 (リトライ上限到達 or 検証エラー)
        cancelled  = キャンセル (queued の間のみ可能)

    redelivery_round:
        失敗済みジョブを再トリガーした回数。試行番号はラウンドごとに1から数える。
    """
    __tablename__ = "delivery_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    release_id = Column(String(128), nullable=False, index=True)
    target_id = Column(Integer, ForeignKey("delivery_targets.id", ondelete="RESTRICT"), nullable=False, index=True)
    idempotency_key = Column(String(512), nullable=False, unique=True)
    tenant_id = Column(String(128), nullable=True, index=True)

    # ERN
    message_type = Column(String(64), nullable=False, default="NewReleaseMessage")
    message_sub_type = Column(SAEnum(*MESSAGE_SUB_TYPES, name="ern_message_sub_type"), nullable=False, default="Initial")
    ern_message_id = Column(String(128), nullable=True)
    ern_version = Column(String(16), nullable=False, default="4.3")
    ern_xml = Column(Text, nullable=True, comment="生成済みERNメッセージ")
    upc = Column(String(14), nullable=True, comment="リリース側にUPCが無い場合の上書き値")
    asset_urls = Column(JSON, nullable=True, comment="{audio: [...], image: [...]} リリースのアセットを上書き")

    status = Column(SAEnum(*JOB_STATUSES, name="delivery_job_status"), nullable=False, default="queued")
    priority = Column(Integer, nullable=False, default=0, comment="大きいほど優先")
    test_mode = Column(Boolean, nullable=False, default=False)
    redelivery_round = Column(Integer, nullable=False, default=0)

    scheduled_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    receipt = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    error = Column(Text, nullable=True, comment="最終エラー (failed時のみ)")
    total_duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_delivery_jobs_queue", "status", "priority", "scheduled_at"),
    )
