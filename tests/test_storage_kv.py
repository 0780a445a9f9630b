from __future__ import annotations

import base64
import json
import os

import pytest

from tenantguard.core.config.models import StorageConfig
from tenantguard.core.errors import StorageError
from tenantguard.core.storage.kv import EncryptedFileKV, MemoryKV, kv_from_config


def _kv(tmp_path):
    return EncryptedFileKV(path=str(tmp_path / "secure" / "store.enc"), key_path=str(tmp_path / "secure" / "store.key"))


def test_memory_kv_copies_values():
    kv = MemoryKV()
    value = {"a": [1, 2]}
    kv.set("k", value)
    value["a"].append(3)
    got = kv.get("k")
    assert got == {"a": [1, 2]}
    got["a"].append(4)
    assert kv.get("k") == {"a": [1, 2]}
    kv.remove("k")
    kv.remove("k")
    assert kv.get("k") is None


def test_encrypted_store_round_trip_and_ciphertext_on_disk(tmp_path):
    kv = _kv(tmp_path)
    kv.set("session", {"token": {"value": "super-secret-token"}})
    assert kv.get("session") == {"token": {"value": "super-secret-token"}}

    with open(kv.path, "r", encoding="utf-8") as f:
        raw = f.read()
    assert "super-secret-token" not in raw
    assert os.path.exists(kv.key_path)

    again = _kv(tmp_path)
    assert again.get("session")["token"]["value"] == "super-secret-token"
    again.remove("session")
    assert _kv(tmp_path).get("session") is None


def test_tampered_store_reads_as_empty(tmp_path):
    kv = _kv(tmp_path)
    kv.set("session", {"x": 1})
    with open(kv.path, "r", encoding="utf-8") as f:
        blob = json.load(f)
    ct = bytearray(base64.urlsafe_b64decode(blob["ciphertext"]))
    ct[0] ^= 0xFF
    blob["ciphertext"] = base64.urlsafe_b64encode(bytes(ct)).decode("ascii")
    with open(kv.path, "w", encoding="utf-8") as f:
        json.dump(blob, f)
    assert kv.get("session") is None

    kv.set("session", {"y": 2})
    assert kv.get("session") == {"y": 2}


def test_garbage_store_reads_as_empty(tmp_path):
    kv = _kv(tmp_path)
    os.makedirs(os.path.dirname(kv.path), exist_ok=True)
    with open(kv.path, "w", encoding="utf-8") as f:
        f.write("not json at all")
    assert kv.get("session") is None


def test_non_json_values_are_rejected(tmp_path):
    kv = _kv(tmp_path)
    with pytest.raises(StorageError):
        kv.set("bad", {"obj": object()})


def test_kv_from_config(tmp_path):
    assert isinstance(kv_from_config(StorageConfig()), MemoryKV)
    kv = kv_from_config(StorageConfig(backend="encrypted_file", path=str(tmp_path / "s.enc"), key_path=str(tmp_path / "s.key")))
    assert isinstance(kv, EncryptedFileKV)
