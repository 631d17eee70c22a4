"""配信パッケージ組み立て

リリース + 配信ジョブから、DDEX命名・MD5付きのファイル一覧を作る。
副作用はリリース/アセットの読み込みのみで、結果は不変のDeliveryPackage。
"""
import hashlib
from typing import Callable, Optional

from ddex_delivery.core.config import settings
from ddex_delivery.core.logging import get_logger
from ddex_delivery.schemas.delivery import (
    DeliveryPackage, PackageFile, PackageMetadata, FileType, MessageSubType, TargetSpec,
)
from ddex_delivery.schemas.release import Release
from ddex_delivery.services.asset_store import AssetStore
from ddex_delivery.services.ddex_naming import (
    PLACEHOLDER_UPC, FALLBACK_AUDIO_EXTENSION,
    audio_file_name, image_file_name, ern_file_name,
    detect_extension, source_file_name, validate_upc, upc_checksum_valid,
)
from ddex_delivery.services.errors import ValidationError
from ddex_delivery.services.release_store import ReleaseStore

logger = get_logger(__name__)

WarningCallback = Callable[[str, dict], None]


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class PackageBuilder:

    def __init__(self, release_store: ReleaseStore, asset_store: AssetStore):
        self.release_store = release_store
        self.asset_store = asset_store

    def build(
        self,
        job,
        target: TargetSpec,
        resolve_assets: bool = True,
        on_warning: Optional[WarningCallback] = None,
    ) -> DeliveryPackage:
        """
        Args:
            job: DeliveryJob (release_id / ern_message_id / ern_xml / message_sub_type ...)
            resolve_assets: Falseならアセットをダウンロードせず URL参照のみ (DSPポインタ配信)
            on_warning: 品質上の警告 (UPC未設定・拡張子不明など) の通知先
        """
        warn = on_warning or (lambda message, details: logger.warning(message))

        release = self.release_store.get_release(job.release_id)
        if release is None:
            raise ValidationError(f"Release not found: {job.release_id}")
        if not job.ern_xml:
            raise ValidationError("ERN message has not been generated for this delivery")
        if not job.ern_message_id:
            raise ValidationError("ERN message id is missing")

        upc = self._resolve_upc(release, job, warn)
        sub_type = MessageSubType(job.message_sub_type)

        ern_bytes = job.ern_xml.encode("utf-8")
        files = [PackageFile(
            name=ern_file_name(job.ern_message_id),
            type=FileType.XML,
            content=ern_bytes,
            md5_hash=md5_hex(ern_bytes),
            size=len(ern_bytes),
        )]

        # Takedownはメディア不要: ERNのみ
        if sub_type != MessageSubType.TAKEDOWN:
            audio_urls, image_urls = self._asset_urls(release, job)
            files.extend(self._audio_files(upc, release, audio_urls, resolve_assets, warn))
            files.extend(self._image_files(upc, image_urls, resolve_assets))

        return DeliveryPackage(
            delivery_id=job.id,
            upc=upc,
            files=tuple(files),
            metadata=PackageMetadata(
                message_id=job.ern_message_id,
                message_type=job.message_type,
                message_sub_type=sub_type,
                test_mode=bool(job.test_mode),
                priority="high" if (job.priority or 0) > 0 else "normal",
            ),
            distributor_id=target.config.get("distributorId") or settings.DISTRIBUTOR_ID or None,
            release_title=release.title,
            release_artist=release.artist,
            ern_version=job.ern_version or settings.ERN_VERSION,
        )

    def _resolve_upc(self, release: Release, job, warn: WarningCallback) -> str:
        upc = release.upc or job.upc
        if not upc:
            warn(
                f"Release has no UPC; using placeholder {PLACEHOLDER_UPC}",
                {"release_id": job.release_id},
            )
            return PLACEHOLDER_UPC
        upc = validate_upc(upc)
        if not upc_checksum_valid(upc):
            warn(f"UPC check digit mismatch: {upc}", {"upc": upc})
        return upc

    @staticmethod
    def _asset_urls(release: Release, job) -> tuple[list[str], list[str]]:
        override = job.asset_urls or {}
        audio = override.get("audio") or release.audio_urls
        image = override.get("image") or release.image_urls
        return list(audio), list(image)

    def _audio_files(self, upc, release, urls, resolve_assets, warn) -> list[PackageFile]:
        files = []
        for position, url in enumerate(urls, start=1):
            if not url:
                continue
            track = release.tracks[position - 1] if position <= len(release.tracks) else None
            sequence = (track.sequence_number if track else None) or position
            disc = (track.disc_number if track else None) or 1

            ext = detect_extension(url)
            if ext is None:
                ext = FALLBACK_AUDIO_EXTENSION
                warn(
                    f"Could not determine file extension for track {sequence}; defaulting to .{ext}",
                    {"url": url, "track": sequence},
                )

            files.append(self._make_file(
                name=audio_file_name(upc, disc, sequence, ext),
                file_type=FileType.AUDIO,
                url=url,
                resolve=resolve_assets,
                track_number=sequence,
                isrc=track.isrc if track else None,
            ))
        return files

    def _image_files(self, upc, urls, resolve_assets) -> list[PackageFile]:
        files = []
        index = 0
        for url in urls:
            if not url:
                continue
            index += 1
            files.append(self._make_file(
                name=image_file_name(upc, index),
                file_type=FileType.IMAGE,
                url=url,
                resolve=resolve_assets,
                image_role="FrontCover" if index == 1 else "Additional",
            ))
        return files

    def _make_file(self, name, file_type, url, resolve, **extra) -> PackageFile:
        content = None
        md5 = None
        size = 0
        if resolve:
            content = self.asset_store.download(url)
            md5 = md5_hex(content)
            size = len(content)
        return PackageFile(
            name=name,
            type=file_type,
            original_name=source_file_name(url),
            url=url,
            content=content,
            md5_hash=md5,
            size=size,
            **extra,
        )
