from __future__ import annotations

import threading
import time
from typing import Any, Optional

from pydantic import ValidationError

from tenantguard.core.config.models import ImpersonationConfig
from tenantguard.core.errors import ImpersonationError, PermissionDeniedError, RateLimitError
from tenantguard.core.events import EventSeverity, SourceSubsystem
from tenantguard.core.identity.models import Actor
from tenantguard.core.impersonation.models import ImpersonationSession
from tenantguard.core.impersonation.rate_limit import ImpersonationRateLimiter
from tenantguard.core.impersonation.tracker import ImpersonationAuditTracker


class ImpersonationManager:
    """
    One impersonation window at a time, bounded by `max_session_seconds`.

    The window is persisted under `cfg.storage_key` so a reload can resume it; corrupt
    or expired records are discarded. Ending a window flushes the tracker log to the
    durable sink (when configured) and always clears it.
    """

    def __init__(
        self,
        *,
        cfg: Optional[ImpersonationConfig] = None,
        tracker: ImpersonationAuditTracker,
        rate_limiter: Optional[ImpersonationRateLimiter] = None,
        kv: Any = None,
        logger=None,
        event_bus=None,
        now: Any = None,
    ):
        self.cfg = cfg or ImpersonationConfig()
        self.tracker = tracker
        self._now = now or time.time
        self.rate_limiter = rate_limiter or ImpersonationRateLimiter(cfg=self.cfg, logger=logger, now=self._now)
        self.kv = kv
        self.logger = logger
        self.event_bus = event_bus
        self._lock = threading.RLock()
        self._active: Optional[ImpersonationSession] = None

    def start(self, operator: Optional[Actor], target_actor_id: str, *, tenant_id: str, reason: Optional[str] = None) -> ImpersonationSession:
        if operator is None or not operator.is_operator:
            raise PermissionDeniedError("Only platform operators can impersonate users.", actor_id=getattr(operator, "id", None))
        if str(target_actor_id or "").strip() == operator.id:
            raise ImpersonationError("Operators cannot impersonate themselves.", actor_id=operator.id)
        with self._lock:
            current = self.active()
            if current is not None:
                raise ImpersonationError("An impersonation session is already active.", session_id=current.session_id)
            now = self._now()
            try:
                session = ImpersonationSession(
                    operator_actor_id=operator.id,
                    target_actor_id=target_actor_id,
                    tenant_id=tenant_id,
                    started_at=now,
                    expires_at=now + float(self.cfg.max_session_seconds),
                    reason=reason,
                )
            except ValidationError as e:
                raise ImpersonationError("Impersonation target and tenant are required.", error=str(e)[:200]) from e
            self.rate_limiter.record_start(session)
            self._active = session
            self._persist(session)
        if self.logger is not None:
            self.logger.info(f"Impersonation {session.session_id}: {operator.id} as {session.target_actor_id} in tenant {session.tenant_id}")
        self._emit("impersonation.started", EventSeverity.WARN, session)
        return session

    def end(self, *, reason: str = "ended") -> Optional[ImpersonationSession]:
        with self._lock:
            session = self._active
            if session is None:
                return None
            self._active = None
            sid = session.session_id
            flushed = self.tracker.flush_session(
                sid,
                context={
                    "operator_actor_id": session.operator_actor_id,
                    "target_actor_id": session.target_actor_id,
                    "tenant_id": session.tenant_id,
                    "reason": reason,
                },
            )
            leftover = self.tracker.clear_session_actions(sid)
            if leftover and self.logger is not None:
                self.logger.error(f"Impersonation {sid}: {leftover} action(s) discarded without a durable copy.")
            self.rate_limiter.record_end(sid)
            self._forget_persisted()
        if self.logger is not None:
            self.logger.info(f"Impersonation {sid} ended ({reason}); {flushed} action(s) flushed.")
        self._emit("impersonation.ended", EventSeverity.INFO, session, reason=reason, flushed=flushed)
        return session

    def active(self) -> Optional[ImpersonationSession]:
        with self._lock:
            session = self._active
            if session is None:
                return None
            if not session.is_valid(self._now()):
                self.end(reason="expired")
                return None
            return session

    def current_session_id(self) -> Optional[str]:
        session = self.active()
        return session.session_id if session is not None else None

    def remaining_seconds(self) -> float:
        session = self.active()
        return session.remaining_seconds(self._now()) if session is not None else 0.0

    def restore(self, operator: Optional[Actor] = None) -> Optional[ImpersonationSession]:
        if self.kv is None:
            return None
        try:
            raw = self.kv.get(self.cfg.storage_key)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Impersonation restore skipped; store unreadable: {e}")
            return None
        if not raw:
            return None
        try:
            session = ImpersonationSession.model_validate(raw)
        except (ValidationError, TypeError, ValueError):
            if self.logger is not None:
                self.logger.warning("Discarding corrupt persisted impersonation session.")
            self._forget_persisted()
            return None
        if not session.is_valid(self._now()):
            if self.logger is not None:
                self.logger.info(f"Discarding expired impersonation session {session.session_id}.")
            self._forget_persisted()
            return None
        if operator is None or not operator.is_operator or operator.id != session.operator_actor_id:
            self._forget_persisted()
            return None
        with self._lock:
            try:
                self.rate_limiter.record_start(session)
            except RateLimitError:
                # window already exists; keep tracking it
                pass
            self._active = session
        return session

    def clear(self) -> None:
        """Logout teardown hook: end any window without raising."""
        try:
            self.end(reason="logout")
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.error(f"Impersonation teardown failed: {e}")
            with self._lock:
                self._active = None
            self._forget_persisted()

    # ---- internals ----
    def _persist(self, session: ImpersonationSession) -> None:
        if self.kv is None:
            return
        try:
            self.kv.set(self.cfg.storage_key, session.model_dump(mode="json"))
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Impersonation session not persisted: {e}")

    def _forget_persisted(self) -> None:
        if self.kv is None:
            return
        try:
            self.kv.remove(self.cfg.storage_key)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Persisted impersonation session not removed: {e}")

    def _emit(self, event_type: str, severity: EventSeverity, session: ImpersonationSession, **extra: Any) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.emit(
                event_type,
                source=SourceSubsystem.impersonation,
                severity=severity,
                session_id=session.session_id,
                operator_actor_id=session.operator_actor_id,
                target_actor_id=session.target_actor_id,
                tenant_id=session.tenant_id,
                **extra,
            )
        except Exception:
            pass
