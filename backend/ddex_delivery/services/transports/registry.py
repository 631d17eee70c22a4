"""プロトコル → 転送アダプタの対応表"""
from typing import Callable

from ddex_delivery.schemas.delivery import Protocol, TargetSpec, TargetType
from ddex_delivery.services.errors import ValidationError
from ddex_delivery.services.transports.base import TransportAdapter

AdapterFactory = Callable[[], TransportAdapter]


class TransportRegistry:

    def __init__(self):
        self._factories: dict[Protocol, AdapterFactory] = {}
        self._dsp_factory: AdapterFactory = None

    def register(self, protocol: Protocol, factory: AdapterFactory):
        self._factories[Protocol(protocol)] = factory

    def register_dsp(self, factory: AdapterFactory):
        """API + DSPタイプの配信先に使うアダプタ"""
        self._dsp_factory = factory

    def missing_protocols(self) -> set[Protocol]:
        return set(Protocol) - set(self._factories)

    def resolve(self, target: TargetSpec) -> TransportAdapter:
        try:
            protocol = Protocol(target.protocol)
        except ValueError:
            raise ValidationError(f"Unsupported protocol: {target.protocol}")
        if protocol == Protocol.API and target.type == TargetType.DSP and self._dsp_factory:
            return self._dsp_factory()
        factory = self._factories.get(protocol)
        if factory is None:
            raise ValidationError(f"No transport registered for protocol: {protocol.value}")
        return factory()


def build_default_registry() -> TransportRegistry:
    from ddex_delivery.services.transports.ftp import FTPTransport
    from ddex_delivery.services.transports.sftp import SFTPTransport
    from ddex_delivery.services.transports.s3 import S3Transport
    from ddex_delivery.services.transports.azure_blob import AzureBlobTransport
    from ddex_delivery.services.transports.api import APITransport
    from ddex_delivery.services.transports.dsp import DSPTransport
    from ddex_delivery.services.transports.storage import StorageTransport

    registry = TransportRegistry()
    registry.register(Protocol.FTP, FTPTransport)
    registry.register(Protocol.SFTP, SFTPTransport)
    registry.register(Protocol.S3, S3Transport)
    registry.register(Protocol.AZURE, AzureBlobTransport)
    registry.register(Protocol.API, APITransport)
    registry.register(Protocol.STORAGE, StorageTransport)
    registry.register_dsp(DSPTransport)

    missing = registry.missing_protocols()
    if missing:
        raise RuntimeError(f"Transport not registered: {sorted(p.value for p in missing)}")
    return registry
