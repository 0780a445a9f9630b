from __future__ import annotations

import time
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Actor(BaseModel):
    """
    Who is acting. `tenant_id is None and is_operator` is a platform operator;
    every other combination is tenant-scoped. Never both.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    tenant_id: Optional[str] = None
    is_operator: bool = False
    role: str = "user"
    granted_permissions: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator("id")
    @classmethod
    def _id_required(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("actor id required")
        return v

    @field_validator("tenant_id")
    @classmethod
    def _blank_tenant_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @model_validator(mode="after")
    def _single_scope(self) -> "Actor":
        if self.is_operator and self.tenant_id is not None:
            raise ValueError("an operator actor cannot be bound to a tenant")
        return self

    @property
    def scope(self) -> str:
        return "operator" if self.is_operator else "tenant"

    def has_grant(self, permission_key: str) -> bool:
        return str(permission_key) in self.granted_permissions


class AuthToken(BaseModel):
    """Opaque bearer material; the format is the backend's business."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    value: str = Field(repr=False)
    issued_at: float = Field(default_factory=lambda: time.time())
    expires_at: Optional[float] = None
    refresh_token: Optional[str] = Field(default=None, repr=False)

    @field_validator("value")
    @classmethod
    def _value_required(cls, v: str) -> str:
        if not str(v or "").strip():
            raise ValueError("token value required")
        return v


class AuthResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    actor: Actor
    token: AuthToken

