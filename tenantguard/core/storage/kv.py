from __future__ import annotations

import copy
import json
import os
import threading
from typing import Any, Dict, Optional, Protocol

from cryptography.exceptions import InvalidTag

from tenantguard.core.errors import StorageError
from tenantguard.core.storage.crypto import aesgcm_decrypt, aesgcm_encrypt, best_effort_restrict_permissions, load_or_create_key


class PersistedKV(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryKV:
    """Process-local store; values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list:
        with self._lock:
            return sorted(self._data.keys())


class EncryptedFileKV:
    """
    JSON key/value store encrypted with AES-256-GCM.

    - The key file is created on first use (0o600 where supported).
    - An unreadable, tampered or corrupt store reads as empty; the next write replaces it.
    - Writes are atomic (tmp + replace).
    """

    def __init__(self, *, path: str, key_path: str, aad: bytes = b"tenantguard.session_store.v1", logger=None):
        self.path = path
        self.key_path = key_path
        self.aad = aad
        self.logger = logger
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            return self._load_locked().get(key)

    def set(self, key: str, value: Any) -> None:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError("Value is not JSON-serializable.", key=key) from e
        with self._lock:
            data = self._load_locked()
            data[key] = value
            self._save_locked(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load_locked()
            if key not in data:
                return
            data.pop(key, None)
            self._save_locked(data)

    def clear(self) -> None:
        with self._lock:
            self._save_locked({})

    # ---- internals ----
    def _load_locked(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                blob = json.load(f)
            key = load_or_create_key(self.key_path)
            pt = aesgcm_decrypt(key, blob, aad=self.aad)
            data = json.loads(pt.decode("utf-8"))
        except (OSError, ValueError, KeyError, TypeError, AttributeError, InvalidTag) as e:
            if self.logger is not None:
                self.logger.warning(f"Session store unreadable; treating as empty: {type(e).__name__}")
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _save_locked(self, data: Dict[str, Any]) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        try:
            key = load_or_create_key(self.key_path)
            pt = json.dumps(data, ensure_ascii=False, sort_keys=True).encode("utf-8")
            blob = aesgcm_encrypt(key, pt, aad=self.aad)
            tmp = self.path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(blob, f, indent=2, ensure_ascii=False, sort_keys=True)
                f.write("\n")
            os.replace(tmp, self.path)
            best_effort_restrict_permissions(self.path)
        except (OSError, ValueError) as e:
            raise StorageError("Session store could not be written.", path=self.path, error=str(e)) from e


def kv_from_config(cfg, *, logger=None):
    """Build the configured PersistedKV (`cfg` is a StorageConfig)."""
    if cfg.backend == "encrypted_file":
        return EncryptedFileKV(path=cfg.path, key_path=cfg.key_path, logger=logger)
    return MemoryKV()
