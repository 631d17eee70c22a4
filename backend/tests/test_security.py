import pytest
from cryptography.exceptions import InvalidTag

from ddex_delivery.core import security
from ddex_delivery.core.config import settings


@pytest.fixture(autouse=True)
def aes_key(monkeypatch):
    monkeypatch.setattr(settings, "AES_KEY", "11" * 32)


def test_connection_settings_round_trip():
    conn = {"host": "ftp.example.com", "password": "s3cret", "port": 21}
    token = security.encrypt_json(conn)
    assert "s3cret" not in token
    assert security.decrypt_json(token) == conn


def test_nonce_differs_per_encryption():
    assert security.encrypt("same") != security.encrypt("same")


def test_wrong_key_is_rejected(monkeypatch):
    token = security.encrypt("value")
    monkeypatch.setattr(settings, "AES_KEY", "22" * 32)
    with pytest.raises(InvalidTag):
        security.decrypt(token)


def test_missing_key(monkeypatch):
    monkeypatch.setattr(settings, "AES_KEY", "")
    with pytest.raises(ValueError):
        security.encrypt("value")


def test_mask_secrets_is_recursive():
    masked = security.mask_secrets({
        "host": "h",
        "accessKeyId": "AKIA",
        "secretAccessKey": "x",
        "auth": {"type": "Bearer", "credentials": {"token": "t"}},
        "privateKey": "",
    })
    assert masked["host"] == "h"
    assert masked["accessKeyId"] == "********"
    assert masked["secretAccessKey"] == "********"
    assert masked["auth"]["credentials"]["token"] == "********"
    assert masked["auth"]["type"] == "Bearer"
    assert masked["privateKey"] == ""
