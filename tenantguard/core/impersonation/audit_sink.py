from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Dict, List, Optional, Protocol

from tenantguard.core.events import redact
from tenantguard.core.impersonation.models import ImpersonationAction


class AuditSink(Protocol):
    def write_actions(self, session_id: str, actions: List[ImpersonationAction], *, context: Optional[Dict[str, Any]] = None) -> None: ...


class JsonlImpersonationAuditSink:
    """
    Durable impersonation trail: one JSON object per action, then one summary line.
    """

    def __init__(self, *, path: str = os.path.join("logs", "impersonation.jsonl")):
        self.path = path
        self._lock = threading.Lock()

    def write_actions(self, session_id: str, actions: List[ImpersonationAction], *, context: Optional[Dict[str, Any]] = None) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        ctx = redact(dict(context or {}))
        lines = []
        for a in actions:
            entry = a.model_dump(mode="json")
            entry["metadata"] = redact(entry.get("metadata") or {})
            entry["event"] = "impersonation.action"
            entry["context"] = ctx
            lines.append(json.dumps(entry, ensure_ascii=False))
        lines.append(
            json.dumps(
                {
                    "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                    "event": "impersonation.flush",
                    "session_id": session_id,
                    "action_count": len(actions),
                    "context": ctx,
                },
                ensure_ascii=False,
            )
        )
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
