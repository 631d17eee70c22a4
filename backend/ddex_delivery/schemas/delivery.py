from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class Protocol(str, Enum):
    FTP = "FTP"
    SFTP = "SFTP"
    S3 = "S3"
    AZURE = "Azure"
    API = "API"
    STORAGE = "Storage"


class TargetType(str, Enum):
    DSP = "DSP"
    AGGREGATOR = "Aggregator"
    TEST = "Test"


class MessageSubType(str, Enum):
    INITIAL = "Initial"
    UPDATE = "Update"
    TAKEDOWN = "Takedown"


class FileType(str, Enum):
    AUDIO = "audio"
    IMAGE = "image"
    XML = "xml"


class TriggerCode(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    ERROR = "error"


class TargetSpec(BaseModel):
    """復号済みの配信先。1回の配信中は変更しない"""
    id: int
    name: str
    protocol: Protocol
    type: TargetType = TargetType.DSP
    connection: dict = Field(default_factory=dict)
    config: dict = Field(default_factory=dict)

    model_config = {"frozen": True}


# --- パッケージ ---

class PackageFile(BaseModel):
    name: str  # DDEX命名済みファイル名
    type: FileType
    original_name: Optional[str] = None
    url: Optional[str] = None
    content: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    md5_hash: Optional[str] = None
    size: int = 0
    track_number: Optional[int] = None
    isrc: Optional[str] = None
    image_role: Optional[str] = None  # FrontCover / Additional

    model_config = {"frozen": True}

    @property
    def content_type(self) -> str:
        return "text/xml" if self.type == FileType.XML else "application/octet-stream"


class PackageMetadata(BaseModel):
    message_id: str
    message_type: str
    message_sub_type: MessageSubType
    test_mode: bool = False
    priority: str = "normal"

    model_config = {"frozen": True}


class DeliveryPackage(BaseModel):
    """1回の試行ごとに組み立てる配信パッケージ。先頭は常にERN XML"""
    delivery_id: int
    upc: str
    files: tuple[PackageFile, ...]
    metadata: PackageMetadata
    distributor_id: Optional[str] = None
    release_title: Optional[str] = None
    release_artist: Optional[str] = None
    ern_version: str = "4.3"

    model_config = {"frozen": True}

    @property
    def ern_file(self) -> PackageFile:
        return self.files[0]

    def files_of(self, file_type: FileType) -> list[PackageFile]:
        return [f for f in self.files if f.type == file_type]


# --- 転送結果 / 受領証 ---

class DeliveredFile(BaseModel):
    name: str
    size: int = 0
    md5: Optional[str] = None
    location: Optional[str] = None
    original_name: Optional[str] = None
    etag: Optional[str] = None


class DeliveryResult(BaseModel):
    success: bool = True
    protocol: str
    files: list[DeliveredFile] = Field(default_factory=list)
    bytes_transferred: int = 0
    message_id: str
    acknowledgment: Optional[str] = None
    acknowledgment_id: Optional[str] = None
    dsp_message_id: Optional[str] = None
    duration_ms: int = 0
    response: Optional[dict] = None


class Receipt(BaseModel):
    acknowledgment: str
    timestamp: datetime
    files: list[DeliveredFile]
    message_sub_type: MessageSubType
    dsp_message_id: Optional[str] = None
    acknowledgment_id: Optional[str] = None
    delivery_id: int
    bytes_transferred: int = 0


# --- API入出力 ---

class AssetUrls(BaseModel):
    audio: list[str] = Field(default_factory=list)
    image: list[str] = Field(default_factory=list)


class TriggerDeliveryRequest(BaseModel):
    release_id: str = Field(min_length=1, max_length=128)
    target_id: int
    message_type: str = "NewReleaseMessage"
    message_sub_type: MessageSubType = MessageSubType.INITIAL
    ern_message_id: str = Field(min_length=1, max_length=128)
    ern_xml: str = Field(min_length=1)
    ern_version: str = "4.3"
    upc: Optional[str] = None
    asset_urls: Optional[AssetUrls] = None
    priority: int = 0
    test_mode: bool = False
    tenant_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class TriggerResult(BaseModel):
    code: TriggerCode
    message: str
    job_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    status: Optional[str] = None
    receipt: Optional[dict] = None
