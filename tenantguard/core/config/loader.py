from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from tenantguard.core.config.models import CONFIG_SCHEMA_VERSION, TenantGuardConfig
from tenantguard.core.errors import ConfigError


DEFAULT_CONFIG_PATH = os.path.join("config", "tenantguard.json")


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    error: Optional[str] = None


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
        if not isinstance(obj, dict):
            return ReadResult(ok=False, data={}, error="not_object")
        return ReadResult(ok=True, data=obj)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e}")
    except Exception as e:  # noqa: BLE001
        return ReadResult(ok=False, data={}, error=str(e))


def atomic_write_json(path: str, data: Dict[str, Any]) -> None:
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def default_config_dict() -> Dict[str, Any]:
    return TenantGuardConfig().model_dump(mode="json")


def validate_and_normalize(raw: Dict[str, Any]) -> TenantGuardConfig:
    if not isinstance(raw, dict):
        raise ConfigError("tenantguard.json must be an object.")
    try:
        schema_version = int(raw.get("schema_version", CONFIG_SCHEMA_VERSION))
    except Exception as e:  # noqa: BLE001
        raise ConfigError("tenantguard.json schema_version must be an integer.") from e
    if schema_version != CONFIG_SCHEMA_VERSION:
        raise ConfigError(f"tenantguard.json schema_version mismatch (expected {CONFIG_SCHEMA_VERSION}).", found=schema_version)
    try:
        return TenantGuardConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError("tenantguard.json failed validation.", detail=str(e)) from e


def load_config(path: str = DEFAULT_CONFIG_PATH, *, logger=None) -> TenantGuardConfig:
    """
    Missing file -> defaults. Corrupt or invalid file -> ConfigError (never silently defaults).
    """
    res = read_json_file(path)
    if not res.ok:
        if res.error == "missing":
            if logger is not None:
                logger.info(f"No config at {path}; using defaults.")
            return TenantGuardConfig()
        raise ConfigError("tenantguard.json could not be read.", path=path, error=res.error)
    return validate_and_normalize(res.data)


def save_config(cfg: TenantGuardConfig, path: str = DEFAULT_CONFIG_PATH) -> None:
    atomic_write_json(path, cfg.model_dump(mode="json"))
