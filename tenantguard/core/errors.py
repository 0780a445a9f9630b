from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from tenantguard.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class TenantGuardError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Core types ----
class ConfigError(TenantGuardError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class StorageError(TenantGuardError):
    def __init__(self, user_message: str = "Session storage error.", **ctx: Any):
        super().__init__("storage_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class StateTransitionError(TenantGuardError):
    def __init__(self, user_message: str = "Internal state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


# ---- Authentication / session ----
class AuthenticationError(TenantGuardError):
    def __init__(self, user_message: str = "Login failed.", **ctx: Any):
        super().__init__("authentication_failed", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class AuthBackendError(TenantGuardError):
    def __init__(self, user_message: str = "The authentication service is unavailable.", **ctx: Any):
        super().__init__("auth_backend_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class SessionExpiredError(TenantGuardError):
    def __init__(self, user_message: str = "Your session has expired. Please log in again.", **ctx: Any):
        super().__init__("session_expired", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class RefreshFailureError(TenantGuardError):
    def __init__(self, user_message: str = "Your session could not be renewed.", **ctx: Any):
        super().__init__("refresh_failure", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Access / registry ----
class PermissionDeniedError(TenantGuardError):
    def __init__(self, user_message: str = "Permission denied.", **ctx: Any):
        super().__init__("permission_denied", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ModuleRegistrationError(TenantGuardError):
    def __init__(self, user_message: str = "Module registration rejected.", **ctx: Any):
        super().__init__("module_registration_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class ModuleInitError(TenantGuardError):
    def __init__(self, user_message: str = "Module failed to initialize.", **ctx: Any):
        super().__init__("module_init_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class DependencyCycleError(ModuleInitError):
    def __init__(self, user_message: str = "Module dependency cycle detected.", **ctx: Any):
        TenantGuardError.__init__(self, "dependency_cycle", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


# ---- Impersonation ----
class ImpersonationError(TenantGuardError):
    def __init__(self, user_message: str = "Impersonation is not available.", **ctx: Any):
        super().__init__("impersonation_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class RateLimitError(TenantGuardError):
    def __init__(self, user_message: str = "Rate limit exceeded.", **ctx: Any):
        super().__init__("rate_limited", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class TrackingError(TenantGuardError):
    def __init__(self, user_message: str = "Action could not be recorded.", **ctx: Any):
        super().__init__("tracking_failure", user_message, severity=Severity.INFO, recoverable=True, context=ctx)
