"""Encrypted attachment handling for rooms with encryption enabled."""

from __future__ import annotations

from typing import Any

from nio.crypto.attachments import decrypt_attachment, encrypt_attachment
from nio.exceptions import EncryptionError

from qqbridge.core.errors import MediaDecryptError


def encrypt_media(data: bytes) -> tuple[bytes, dict[str, Any]]:
    """Encrypt bytes for upload; returns ``(ciphertext, file_info)`` without the url."""
    ciphertext, keys = encrypt_attachment(data)
    return ciphertext, dict(keys)


def encrypted_file_content(mxc: str, file_info: dict[str, Any]) -> dict[str, Any]:
    """The ``file`` object of an encrypted media event."""
    return {"url": mxc, **file_info}


def decrypt_media(ciphertext: bytes, file_info: dict[str, Any]) -> bytes:
    """Decrypt a downloaded attachment described by an event's ``file`` object."""
    key = file_info.get("key")
    key_data = key.get("k") if isinstance(key, dict) else None
    hashes = file_info.get("hashes")
    sha256 = hashes.get("sha256") if isinstance(hashes, dict) else None
    iv = file_info.get("iv")
    if not all(isinstance(v, str) for v in (key_data, sha256, iv)):
        raise MediaDecryptError("encrypted file info is missing key, iv or hash")
    try:
        return decrypt_attachment(ciphertext, key_data, sha256, iv)
    except (EncryptionError, ValueError, TypeError) as e:
        raise MediaDecryptError(f"failed to decrypt media: {e}") from e
