from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from tenantguard.core.access.models import AccessDecision
from tenantguard.core.events import redact
from tenantguard.core.security_events import SecurityAuditLogger


class AccessAuditLogger:
    """
    Writes access decisions to logs/security.jsonl and retains a small in-memory tail.
    """

    def __init__(self, *, path: str = "logs/security.jsonl", keep_last: int = 200):
        self._audit = SecurityAuditLogger(path=path)
        self._lock = threading.Lock()
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max(50, int(keep_last)))

    @property
    def path(self) -> str:
        return self._audit.path

    def log_decision(self, dec: AccessDecision, *, trace_id: str = "access", tenant_id: Optional[str] = None) -> None:
        if dec.is_isolation_denial:
            severity = "HIGH"
        elif not dec.allowed:
            severity = "WARN"
        else:
            severity = "INFO"
        details = redact(
            {
                "module": dec.module_key,
                "reason": dec.reason_code.value,
                "permission_key": dec.permission_key,
                "detail": dec.detail,
            }
        )
        outcome = "allowed" if dec.allowed else "denied"
        self._audit.log(
            trace_id=trace_id,
            severity=severity,
            event="access.decision",
            outcome=outcome,
            actor_id=dec.actor_id,
            tenant_id=tenant_id,
            details=details,
        )
        with self._lock:
            self._recent.appendleft({"trace_id": trace_id, "severity": severity, "outcome": outcome, "actor_id": dec.actor_id, "details": details})

    def recent(self, n: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)[: max(1, int(n))]
