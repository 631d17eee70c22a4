import pytest

from ddex_delivery.services.ddex_naming import (
    audio_file_name, image_file_name, ern_file_name, detect_extension,
    source_file_name, validate_upc, upc_checksum_valid,
)
from ddex_delivery.services.errors import ValidationError


def test_audio_name_pads_disc_and_track():
    assert audio_file_name("123456789012", 1, 3, "flac") == "123456789012_01_003.flac"
    assert audio_file_name("123456789012", 2, 14, "wav") == "123456789012_02_014.wav"


def test_image_names_are_one_based():
    assert image_file_name("123456789012", 1) == "123456789012.jpg"
    assert image_file_name("123456789012", 2) == "123456789012_02.jpg"
    assert image_file_name("123456789012", 10) == "123456789012_10.jpg"


def test_ern_name():
    assert ern_file_name("ERN_0001") == "ERN_0001.xml"


@pytest.mark.parametrize("url,expected", [
    ("https://cdn.example.com/a/track.FLAC", "flac"),
    ("https://cdn.example.com/a/track.mpeg?token=abc", "mp3"),
    ("https://cdn.example.com/a/cover.jpeg", "jpg"),
    ("https://cdn.example.com/a/track.aiff", "aiff"),
    ("https://cdn.example.com/a/track", None),
    ("", None),
])
def test_detect_extension(url, expected):
    assert detect_extension(url) == expected


def test_source_file_name_decodes_storage_paths():
    url = "https://firebasestorage.googleapis.com/v0/b/bucket/o/releases%2Frel-1%2Fmaster.wav?alt=media"
    assert source_file_name(url) == "master.wav"


def test_validate_upc():
    assert validate_upc(" 123456789012 ") == "123456789012"
    assert validate_upc("12345678901234") == "12345678901234"
    for bad in ("12345", "12345678901A", "", None):
        with pytest.raises(ValidationError):
            validate_upc(bad)


def test_upc_checksum():
    assert upc_checksum_valid("123456789012")
    assert not upc_checksum_valid("123456789013")
    # 12桁以外は判定しない
    assert upc_checksum_valid("1234567890123")
