from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReasonCode(str, Enum):
    OperatorModule = "OperatorModule"
    Permitted = "Permitted"
    Unauthenticated = "Unauthenticated"
    OperatorIsolation = "OperatorIsolation"
    TenantIsolation = "TenantIsolation"
    InsufficientPermission = "InsufficientPermission"
    NoPermissionMapping = "NoPermissionMapping"
    UnknownModule = "UnknownModule"
    EvaluationError = "EvaluationError"


# Absolute denials: no permission grant can turn these into an allow.
ISOLATION_REASONS = frozenset({ReasonCode.OperatorIsolation, ReasonCode.TenantIsolation})


class AccessDecision(BaseModel):
    """Re-derivable decision value; never persisted."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    allowed: bool
    reason_code: ReasonCode
    module_key: str = ""
    actor_id: Optional[str] = None
    permission_key: Optional[str] = None
    evaluated_at: float = Field(default_factory=lambda: time.time())
    detail: str = ""

    @property
    def is_isolation_denial(self) -> bool:
        return self.reason_code in ISOLATION_REASONS
