"""DDEX準拠のファイル命名

    音声:   {upc}_{disc:02}_{track:03}.{ext}
    画像:   1枚目 {upc}.jpg / 2枚目以降 {upc}_{index:02}.jpg (indexは1始まり)
    ERN:    {messageId}.xml
"""
import re
import posixpath
from typing import Optional
from urllib.parse import urlparse, unquote

from ddex_delivery.services.errors import ValidationError

PLACEHOLDER_UPC = "0000000000000"
FALLBACK_AUDIO_EXTENSION = "wav"

EXTENSION_MAP = {
    "mp3": "mp3",
    "mpeg": "mp3",
    "wav": "wav",
    "wave": "wav",
    "flac": "flac",
    "jpg": "jpg",
    "jpeg": "jpg",
    "png": "png",
}

_UPC_PATTERN = re.compile(r"^\d{12,14}$")


def source_file_name(url: str) -> str:
    """URLから元ファイル名を取り出す (Storageの %2F 区切りパスにも対応)"""
    path = unquote(urlparse(url).path)
    return posixpath.basename(path.rstrip("/"))


def detect_extension(url: str) -> Optional[str]:
    """URLから拡張子を正規化して返す。判定できなければNone"""
    if not url:
        return None
    name = source_file_name(url)
    if "." not in name:
        return None
    ext = name.rsplit(".", 1)[1].lower()
    if not ext:
        return None
    return EXTENSION_MAP.get(ext, ext)


def audio_file_name(upc: str, disc_number: int, track_sequence: int, ext: str) -> str:
    return f"{upc}_{disc_number:02d}_{track_sequence:03d}.{ext}"


def image_file_name(upc: str, index: int) -> str:
    """index は1始まり"""
    if index == 1:
        return f"{upc}.jpg"
    return f"{upc}_{index:02d}.jpg"


def ern_file_name(message_id: str) -> str:
    return f"{message_id}.xml"


def validate_upc(upc: str) -> str:
    """12〜14桁の数字でなければValidationError"""
    value = (upc or "").strip()
    if not _UPC_PATTERN.match(value):
        raise ValidationError(f"Invalid UPC format: {upc!r} (expected 12-14 digits)")
    return value


def upc_checksum_valid(upc: str) -> bool:
    """UPC-A (12桁) のチェックディジット検証。12桁以外は判定しない"""
    if len(upc) != 12 or not upc.isdigit():
        return True
    digits = [int(c) for c in upc]
    total = sum(digits[0:11:2]) * 3 + sum(digits[1:11:2])
    return (10 - total % 10) % 10 == digits[11]
