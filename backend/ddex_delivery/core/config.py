import os
import socket
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://ddex:ddexpassword@db:3306/ddex_delivery?charset=utf8mb4"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # セキュリティ
    AES_KEY: str = ""
    API_TOKEN: str = ""

    # 配信
    DISTRIBUTOR_ID: str = ""
    INSTANCE_ID: str = ""
    ERN_VERSION: str = "4.3"
    LOCK_TTL_SECONDS: int = 600  # 処理中ロックの有効期限 (10分)
    LOCK_RETENTION_SECONDS: int = 86400  # 終了済みロックの保持期間 (24時間)
    MAX_ATTEMPTS: int = 3
    RETRY_DELAYS_SECONDS: str = "300,900,3600"  # 5分, 15分, 60分
    CONNECT_TIMEOUT_SECONDS: int = 10
    ATTEMPT_TIMEOUT_SECONDS: int = 300
    MULTIPART_THRESHOLD_BYTES: int = 5 * 1024 * 1024
    STAGING_DIR: str = ""  # 空ならOSの一時ディレクトリ

    # 外部ストア
    FIRESTORE_PROJECT: str = ""
    FIRESTORE_CREDENTIAL_JSON: str = ""  # サービスアカウントJSON (平文)。空ならADC
    RELEASES_COLLECTION: str = "releases"
    GCS_BUCKET: str = ""

    # Worker
    WORKER_BATCH_SIZE: int = 10
    WORKER_POLL_SECONDS: int = 5

    # レート制限
    TRIGGER_RATE_LIMIT: str = "20/minute"
    RATE_LIMIT_STORAGE_URI: str = ""  # 空ならREDIS_URLを使用

    # サービス設定
    SITE_NAME: str = "DDEX Delivery"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:3000"

    # 環境
    ENV: str = "development"
    DEBUG: bool = False

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def retry_delays(self) -> list[int]:
        return [int(d) for d in self.RETRY_DELAYS_SECONDS.split(",") if d.strip()]

    @property
    def instance_id(self) -> str:
        """ロック所有者として記録するインスタンスID"""
        return self.INSTANCE_ID or f"{socket.gethostname()}-{os.getpid()}"

    @property
    def rate_limit_storage_uri(self) -> str:
        return self.RATE_LIMIT_STORAGE_URI or self.REDIS_URL

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
