from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImpersonationActionType(str, Enum):
    PageView = "PageView"
    ApiCall = "ApiCall"
    Create = "Create"
    Update = "Update"
    Delete = "Delete"
    Export = "Export"
    Search = "Search"
    Print = "Print"


CRUD_ACTION_TYPES = frozenset({ImpersonationActionType.Create, ImpersonationActionType.Update, ImpersonationActionType.Delete})


class ImpersonationAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    action_type: ImpersonationActionType
    resource: str
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: float = Field(default_factory=lambda: time.time())

    @field_validator("session_id", "resource")
    @classmethod
    def _required(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("value required")
        return v


class ImpersonationSession(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    operator_actor_id: str
    target_actor_id: str
    tenant_id: str
    started_at: float = Field(default_factory=lambda: time.time())
    expires_at: float
    reason: Optional[str] = None

    @field_validator("operator_actor_id", "target_actor_id", "tenant_id")
    @classmethod
    def _required(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("value required")
        return v

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, float(self.expires_at) - float(now))

    def is_valid(self, now: float) -> bool:
        return float(now) < float(self.expires_at)


class RateLimitCheck(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    allowed: bool
    reason: Optional[str] = None
    reset_at: Optional[float] = None
    sessions_in_window: int = 0
    active_sessions: int = 0
    remaining_starts: int = 0
    remaining_slots: int = 0
