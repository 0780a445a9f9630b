from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tenantguard.core.config.models import ImpersonationConfig
from tenantguard.core.errors import RateLimitError
from tenantguard.core.impersonation.models import ImpersonationSession, RateLimitCheck


@dataclass
class _Usage:
    session_id: str
    operator_actor_id: str
    started_at: float
    ended_at: Optional[float] = None


class ImpersonationRateLimiter:
    """
    Per-operator limits on impersonation starts (rolling window) and concurrent windows.
    """

    def __init__(self, *, cfg: Optional[ImpersonationConfig] = None, logger=None, now: Any = None):
        self.cfg = cfg or ImpersonationConfig()
        self.logger = logger
        self._now = now or time.time
        self._lock = threading.Lock()
        self._usage: Dict[str, _Usage] = {}

    def check(self, operator_actor_id: str) -> RateLimitCheck:
        with self._lock:
            return self._check_locked(str(operator_actor_id))

    def record_start(self, session: ImpersonationSession) -> RateLimitCheck:
        with self._lock:
            chk = self._check_locked(session.operator_actor_id)
            if not chk.allowed:
                raise RateLimitError(chk.reason or "Impersonation rate limit exceeded.", operator_actor_id=session.operator_actor_id, reset_at=chk.reset_at)
            self._usage[session.session_id] = _Usage(
                session_id=session.session_id,
                operator_actor_id=session.operator_actor_id,
                started_at=float(session.started_at),
            )
        if self.logger is not None:
            self.logger.info(f"Impersonation started: {session.session_id} by {session.operator_actor_id}")
        return chk

    def record_end(self, session_id: str) -> bool:
        with self._lock:
            u = self._usage.get(str(session_id))
            if u is None or u.ended_at is not None:
                return False
            u.ended_at = self._now()
            duration = u.ended_at - u.started_at
        if duration > float(self.cfg.max_session_seconds) and self.logger is not None:
            self.logger.warning(f"Impersonation {session_id} exceeded max duration ({int(duration)}s).")
        return True

    def active_sessions(self, operator_actor_id: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                u.session_id
                for u in self._usage.values()
                if u.ended_at is None and (operator_actor_id is None or u.operator_actor_id == operator_actor_id)
            ]

    def reset(self, operator_actor_id: Optional[str] = None) -> None:
        with self._lock:
            if operator_actor_id is None:
                self._usage.clear()
                return
            for sid in [s for s, u in self._usage.items() if u.operator_actor_id == operator_actor_id]:
                self._usage.pop(sid, None)

    # ---- internals ----
    def _check_locked(self, operator_actor_id: str) -> RateLimitCheck:
        max_starts = int(self.cfg.max_per_hour)
        max_active = int(self.cfg.max_concurrent)
        if not self.cfg.rate_limit_enabled:
            return RateLimitCheck(allowed=True, remaining_starts=max_starts, remaining_slots=max_active)

        now = self._now()
        window = float(self.cfg.rate_window_seconds)
        for sid in [s for s, u in self._usage.items() if u.ended_at is not None and u.started_at < now - window]:
            self._usage.pop(sid, None)
        mine = [u for u in self._usage.values() if u.operator_actor_id == operator_actor_id]
        in_window = [u for u in mine if u.started_at >= now - window]
        active = [u for u in mine if u.ended_at is None]
        reset_at = (min(u.started_at for u in in_window) + window) if in_window else None

        reason = None
        if len(in_window) >= max_starts:
            reason = f"Rate limit exceeded: {len(in_window)}/{max_starts} impersonations in the last {int(window)}s."
        elif len(active) >= max_active:
            reason = f"Concurrent session limit exceeded: {len(active)}/{max_active} active sessions."
        return RateLimitCheck(
            allowed=reason is None,
            reason=reason,
            reset_at=reset_at,
            sessions_in_window=len(in_window),
            active_sessions=len(active),
            remaining_starts=max(0, max_starts - len(in_window)),
            remaining_slots=max(0, max_active - len(active)),
        )
