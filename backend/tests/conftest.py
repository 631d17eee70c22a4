"""共通フィクスチャ"""
import os

# 設定はimport時に読み込まれるため、パッケージより先に環境変数を入れておく
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("AES_KEY", "00" * 32)
os.environ.setdefault("API_TOKEN", "test-token")

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import ddex_delivery.models  # noqa: F401
from ddex_delivery.core.database import Base, engine_options
from ddex_delivery.schemas.delivery import (
    DeliveredFile, DeliveryResult, Protocol, TriggerDeliveryRequest,
)
from ddex_delivery.schemas.release import Release, ReleaseTrack
from ddex_delivery.schemas.target import TargetCreate
from ddex_delivery.services.errors import TransportError
from ddex_delivery.services.lock_manager import LockManager
from ddex_delivery.services.package_builder import PackageBuilder
from ddex_delivery.services.retry_policy import RetryPolicy
from ddex_delivery.services.target_service import create_target
from ddex_delivery.services.transports.base import TransportAdapter
from ddex_delivery.services.transports.registry import TransportRegistry
from ddex_delivery.services.delivery_service import DeliveryOrchestrator

BASE_TIME = datetime(2026, 1, 15, 10, 0, 0)
UPC = "123456789012"


class FixedClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeReleaseStore:
    def __init__(self, releases: dict = None):
        self.releases = releases or {}
        self.calls = 0

    def get_release(self, release_id):
        self.calls += 1
        return self.releases.get(release_id)


class FakeAssetStore:
    def __init__(self):
        self.downloads = []

    def download(self, url):
        self.downloads.append(url)
        return f"bytes-of:{url}".encode("utf-8")


class RecordingTransport(TransportAdapter):
    """呼び出しを記録し、指定回数だけ失敗する転送アダプタ"""

    protocol = Protocol.FTP

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.calls = []

    def _deliver(self, target, pkg, deadline):
        self.calls.append(pkg)
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("FTP", ConnectionRefusedError("connection refused"))
        return DeliveryResult(
            protocol="FTP",
            files=[DeliveredFile(name=f.name, size=f.size, md5=f.md5_hash) for f in pkg.files],
            bytes_transferred=sum(f.size for f in pkg.files),
            message_id=pkg.metadata.message_id,
            acknowledgment="Uploaded via fake FTP",
        )


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, job, notification_type, data):
        if self.fail:
            raise RuntimeError("notification backend unavailable")
        self.sent.append((job.id, notification_type, data))

    @property
    def types(self):
        return [t for _, t, _ in self.sent]


def sample_release(release_id: str = "rel-1", upc: str = UPC) -> Release:
    return Release(
        release_id=release_id,
        upc=upc,
        title="Night Drive",
        artist="The Examples",
        tracks=[ReleaseTrack(sequence_number=i, isrc=f"USX9P260000{i}") for i in (1, 2, 3)],
        audio_urls=[
            "https://cdn.example.com/audio/intro.flac",
            "https://cdn.example.com/audio/second.flac",
            "https://cdn.example.com/audio/third.flac",
        ],
        image_urls=[
            "https://cdn.example.com/images/cover.jpeg",
            "https://cdn.example.com/images/back.jpeg",
        ],
    )


def make_job(**overrides):
    """PackageBuilder用のジョブ相当オブジェクト"""
    values = dict(
        id=42,
        release_id="rel-1",
        ern_message_id="ERN_0001",
        ern_xml="<ern:NewReleaseMessage/>",
        ern_version="4.3",
        upc=None,
        message_type="NewReleaseMessage",
        message_sub_type="Initial",
        test_mode=False,
        priority=0,
        asset_urls=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def trigger_request(target_id: int, **overrides) -> TriggerDeliveryRequest:
    values = dict(
        release_id="rel-1",
        target_id=target_id,
        ern_message_id="ERN_0001",
        ern_xml="<ern:NewReleaseMessage/>",
    )
    values.update(overrides)
    return TriggerDeliveryRequest(**values)


@pytest.fixture
def engine(tmp_path):
    url = f"sqlite:///{tmp_path / 'delivery.db'}"
    eng = create_engine(url, **engine_options(url))
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def release_store():
    return FakeReleaseStore({"rel-1": sample_release()})


@pytest.fixture
def asset_store():
    return FakeAssetStore()


@pytest.fixture
def make_target(db):
    counter = {"n": 0}

    def _make(protocol="FTP", type="Aggregator", connection=None, config=None, active=True):
        counter["n"] += 1
        return create_target(db, TargetCreate(
            name=f"target-{counter['n']}",
            protocol=protocol,
            type=type,
            connection=connection or {"host": "ftp.example.com", "username": "u", "password": "p"},
            config=config or {},
            active=active,
        ))
    return _make


@pytest.fixture
def lock_manager(session_factory, clock):
    return LockManager(session_factory, instance_id="worker-1", clock=clock)


@pytest.fixture
def orchestrator_factory(session_factory, clock, release_store, asset_store, lock_manager):
    def _make(transport=None, sink=None):
        transport = transport or RecordingTransport()
        registry = TransportRegistry()
        for protocol in Protocol:
            registry.register(protocol, lambda t=transport: t)
        return DeliveryOrchestrator(
            package_builder=PackageBuilder(release_store, asset_store),
            notification_sink=sink if sink is not None else RecordingSink(),
            registry=registry,
            lock_manager=lock_manager,
            retry_policy=RetryPolicy(max_attempts=3, delays_seconds=[300, 900, 3600]),
            session_factory=session_factory,
            clock=clock,
        )
    return _make
