"""配信先接続情報の暗号化 (AES-256-GCM)"""
import os
import json
import base64
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from ddex_delivery.core.config import settings

NONCE_SIZE = 12


def _get_key() -> bytes:
    key_hex = settings.AES_KEY
    if not key_hex:
        raise ValueError("AES_KEY が設定されていません")
    return bytes.fromhex(key_hex)


def encrypt(plaintext: str) -> str:
    """AES-256-GCM暗号化 → base64(nonce + ciphertext)"""
    aesgcm = AESGCM(_get_key())
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("utf-8")


def decrypt(encrypted: str) -> str:
    """base64(nonce + ciphertext) → 平文"""
    data = base64.b64decode(encrypted)
    aesgcm = AESGCM(_get_key())
    return aesgcm.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None).decode("utf-8")


def encrypt_json(value: dict) -> str:
    return encrypt(json.dumps(value, ensure_ascii=False))


def decrypt_json(encrypted: str) -> dict:
    return json.loads(decrypt(encrypted))


def mask_secrets(connection: dict) -> dict:
    """APIレスポンス用: パスワード・鍵類を伏せ字にする"""
    masked = {}
    for key, value in connection.items():
        if isinstance(value, dict):
            masked[key] = mask_secrets(value)
        elif value and any(s in key.lower() for s in ("password", "secret", "key", "token", "passphrase")):
            masked[key] = "********"
        else:
            masked[key] = value
    return masked
