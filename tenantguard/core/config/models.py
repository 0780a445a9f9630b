from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantguard.core.modules.defaults import OPERATOR_MODULES, TENANT_MODULES


CONFIG_SCHEMA_VERSION = 1


class SessionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    idle_timeout_seconds: float = Field(default=1800.0, gt=0)
    warning_lead_seconds: float = Field(default=300.0, ge=0)
    session_timeout_seconds: float = Field(default=3600.0, gt=0)  # used when the backend token carries no expiry
    refresh_lead_seconds: float = Field(default=300.0, ge=0)
    refresh_attempts: int = Field(default=1, ge=1, le=5)
    auto_refresh: bool = True
    sample_interval_seconds: float = Field(default=1.0, gt=0, le=60.0)
    activity_debounce_seconds: float = Field(default=0.0, ge=0, le=60.0)
    persist_interval_seconds: float = Field(default=30.0, ge=0, le=600.0)  # activity writes to the store at most this often
    logout_settle_seconds: float = Field(default=0.15, ge=0, le=5.0)
    storage_key: str = "session"

    @model_validator(mode="after")
    def _warning_inside_idle_window(self) -> "SessionConfig":
        if self.warning_lead_seconds >= self.idle_timeout_seconds:
            raise ValueError("warning_lead_seconds must be smaller than idle_timeout_seconds")
        return self

    @property
    def warning_at_seconds(self) -> float:
        return float(self.idle_timeout_seconds) - float(self.warning_lead_seconds)


class AccessConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operator_modules: List[str] = Field(default_factory=lambda: list(OPERATOR_MODULES))
    tenant_modules: List[str] = Field(default_factory=lambda: list(TENANT_MODULES))
    decision_ttl_seconds: float = Field(default=0.0, ge=0, le=3600.0)  # 0 disables memoization
    audit_allowed: bool = False

    @field_validator("operator_modules", "tenant_modules")
    @classmethod
    def _normalize(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for name in v:
            n = str(name or "").strip().lower()
            if n and n not in out:
                out.append(n)
        return out

    @model_validator(mode="after")
    def _disjoint(self) -> "AccessConfig":
        both = sorted(set(self.operator_modules) & set(self.tenant_modules))
        if both:
            raise ValueError(f"modules cannot be both operator-only and tenant-scoped: {both}")
        return self


class ImpersonationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rate_limit_enabled: bool = True
    max_per_hour: int = Field(default=10, ge=1, le=1000)
    max_concurrent: int = Field(default=5, ge=1, le=100)
    max_session_seconds: float = Field(default=1800.0, gt=0)
    rate_window_seconds: float = Field(default=3600.0, gt=0)
    max_actions_per_session: int = Field(default=1000, ge=1, le=100_000)
    storage_key: str = "impersonation_session"


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: str = "memory"  # memory | encrypted_file
    path: str = "secure/session_store.enc"
    key_path: str = "secure/session_store.key"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        v = str(v or "").strip().lower()
        if v not in {"memory", "encrypted_file"}:
            raise ValueError("storage.backend must be 'memory' or 'encrypted_file'")
        return v


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_dir: str = "logs"
    level: str = "INFO"
    security_log: str = "logs/security.jsonl"
    impersonation_log: str = "logs/impersonation.jsonl"


class TenantGuardConfig(BaseModel):
    """
    config/tenantguard.json schema.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = CONFIG_SCHEMA_VERSION
    session: SessionConfig = Field(default_factory=SessionConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    impersonation: ImpersonationConfig = Field(default_factory=ImpersonationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
