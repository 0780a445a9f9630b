from __future__ import annotations

import base64
import os
import secrets
from typing import Dict

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


BLOB_VERSION = 1


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def best_effort_restrict_permissions(path: str) -> None:
    """
    Best-effort permissions tightening.
    On Windows this is limited; on POSIX it sets 0o600.
    """
    try:
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError:
        return


def read_key_file(path: str) -> bytes:
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != 32:
        raise ValueError("Store key must be 32 bytes (AES-256).")
    return b


def load_or_create_key(path: str) -> bytes:
    if os.path.exists(path):
        return read_key_file(path)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    key = generate_key_bytes()
    with open(path, "wb") as f:
        f.write(key)
    best_effort_restrict_permissions(path)
    return key


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, object]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": BLOB_VERSION, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, object], aad: bytes = b"") -> bytes:
    if blob.get("v") != BLOB_VERSION:
        raise ValueError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    nonce = _b64d(str(blob["nonce"]))
    ct = _b64d(str(blob["ciphertext"]))
    return aes.decrypt(nonce, ct, aad or None)
