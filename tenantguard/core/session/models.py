from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from tenantguard.core.identity.models import Actor, AuthToken


class SessionState(str, Enum):
    Active = "Active"
    IdleWarning = "IdleWarning"
    Expired = "Expired"
    Terminated = "Terminated"


LIVE_STATES: FrozenSet[SessionState] = frozenset({SessionState.Active, SessionState.IdleWarning})

ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.Active: frozenset({SessionState.IdleWarning, SessionState.Expired, SessionState.Terminated}),
    SessionState.IdleWarning: frozenset({SessionState.Active, SessionState.Expired, SessionState.Terminated}),
    SessionState.Expired: frozenset({SessionState.Terminated}),
    SessionState.Terminated: frozenset(),
}


class Session(BaseModel):
    """Mutable; owned by SessionLifecycleController and never handed out."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    token: AuthToken
    issued_at: float
    last_activity_at: float
    expires_at: float
    state: SessionState = SessionState.Active


class SessionRecord(BaseModel):
    """What goes into the persisted store (one key)."""

    model_config = ConfigDict(extra="forbid")

    actor: Actor
    token: AuthToken
    issued_at: float
    last_activity_at: float
    expires_at: float


class SessionInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    is_valid: bool
    state: Optional[SessionState] = None
    time_until_expiry: float = 0.0
    idle_time: float = 0.0
    warning_remaining: Optional[float] = None
    actor_id: Optional[str] = None
    sampled_at: float = Field(default=0.0)
