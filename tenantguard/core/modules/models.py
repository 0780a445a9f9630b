from __future__ import annotations

from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ModuleClassification(str, Enum):
    OperatorOnly = "OperatorOnly"
    TenantScoped = "TenantScoped"


def normalize_module_name(name: Optional[str]) -> str:
    return str(name or "").strip().lower()


class ModuleDescriptor(BaseModel):
    """
    Immutable description of one capability module.

    `classification` is a closed variant; the registry checks it against the configured
    name sets when the descriptor is registered.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    classification: ModuleClassification
    dependencies: Tuple[str, ...] = Field(default_factory=tuple)
    permission_key: Optional[str] = None
    description: str = ""

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = normalize_module_name(v)
        if not v:
            raise ValueError("module name required")
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def _deps(cls, v):  # noqa: ANN001
        out: List[str] = []
        for d in v or ():
            n = normalize_module_name(d)
            if n and n not in out:
                out.append(n)
        return tuple(out)

    @field_validator("permission_key")
    @classmethod
    def _key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class InitFailure(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    error: str


class InitSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    succeeded: List[str] = Field(default_factory=list)
    failed: List[InitFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def failed_names(self) -> List[str]:
        return [f.name for f in self.failed]
