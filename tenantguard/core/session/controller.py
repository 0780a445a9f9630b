from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from tenantguard.core.auth.notifications import NotificationLevel, safe_notify
from tenantguard.core.config.models import SessionConfig
from tenantguard.core.errors import AuthenticationError, RefreshFailureError, SessionExpiredError, StateTransitionError, TenantGuardError
from tenantguard.core.events import EventSeverity, SourceSubsystem
from tenantguard.core.identity.models import Actor, AuthResult, AuthToken
from tenantguard.core.session.models import (
    ALLOWED_TRANSITIONS,
    LIVE_STATES,
    Session,
    SessionInfo,
    SessionRecord,
    SessionState,
)
from tenantguard.core.storage.kv import MemoryKV
from tenantguard.core.timers import Scheduler, ThreadingScheduler


class SessionLifecycleController:
    """
    Owns the authenticated session and its state machine:

      Active -> IdleWarning -> Expired
      IdleWarning -> Active            (activity / extend)
      Active|IdleWarning -> Expired    (idle timeout, hard token expiry, refresh failure)
      any -> Terminated                (logout, terminal)

    Every state change goes through `_transition`. Timers only trigger checks; each
    callback re-validates the monitoring flag, its generation and the clock before
    acting, so a timer that fires after cancellation is a no-op.
    """

    def __init__(
        self,
        *,
        auth_backend: Any,
        cfg: Optional[SessionConfig] = None,
        kv: Any = None,
        notifier: Any = None,
        scheduler: Optional[Scheduler] = None,
        event_bus=None,
        logger=None,
        now: Any = None,
        sleep: Any = None,
    ):
        self.cfg = cfg or SessionConfig()
        self.auth_backend = auth_backend
        self.kv = kv if kv is not None else MemoryKV()
        self.notifier = notifier
        self.scheduler = scheduler or ThreadingScheduler(name="tenantguard-session")
        self.event_bus = event_bus
        self.logger = logger
        self._now = now or time.time
        self._sleep = sleep or time.sleep

        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._actor: Optional[Actor] = None
        self._monitoring = False
        self._tearing_down = False
        self._refreshing = False
        self._refresh_attempted_for: Optional[float] = None
        self._token_issued_at = 0.0
        self._persisted_activity_at: Optional[float] = None

        self._idle_gen = 0
        self._token_gen = 0
        self._tick_gen = 0
        self._idle_handle: Any = None
        self._token_handle: Any = None
        self._tick_handle: Any = None

        self._on_expiry: Optional[Callable[[], None]] = None
        self._on_idle_warning: Optional[Callable[[float], None]] = None
        self._on_activity_resumed: Optional[Callable[[], None]] = None
        self._teardown_hooks: List[Callable[[], None]] = []
        self._last_sample: Optional[SessionInfo] = None

    # ---- read side ----
    @property
    def state(self) -> Optional[SessionState]:
        with self._lock:
            return self._session.state if self._session is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self.get_session_info().is_valid

    @property
    def current_actor(self) -> Optional[Actor]:
        with self._lock:
            if not self._info_locked().is_valid:
                return None
            return self._actor

    @property
    def is_monitoring(self) -> bool:
        with self._lock:
            return self._monitoring

    def get_session_info(self) -> SessionInfo:
        with self._lock:
            return self._info_locked()

    def latest_sample(self) -> Optional[SessionInfo]:
        """Snapshot taken by the display tick; for countdown rendering only."""
        with self._lock:
            return self._last_sample

    def add_teardown_hook(self, fn: Callable[[], None]) -> None:
        if not callable(fn):
            raise ValueError("teardown hook must be callable")
        with self._lock:
            self._teardown_hooks.append(fn)

    # ---- login / restore ----
    def login(self, credentials: Dict[str, Any]) -> Actor:
        with self._lock:
            if self._tearing_down:
                raise AuthenticationError("Logout in progress; try again.")
            prev = self._session
            if prev is not None and prev.state in LIVE_STATES:
                if self.logger is not None:
                    self.logger.info("Login replaces the current session.")
                self._stop_timers_locked()
                self._transition(SessionState.Terminated, reason="replaced")

        try:
            result = self.auth_backend.login(credentials)
            if not isinstance(result, AuthResult):
                result = AuthResult.model_validate(result)
        except AuthenticationError as e:
            safe_notify(self.notifier, NotificationLevel.error, "Login Failed", e.user_message, logger=self.logger)
            raise
        except TenantGuardError as e:
            safe_notify(self.notifier, NotificationLevel.error, "Login Failed", e.user_message, logger=self.logger)
            raise AuthenticationError(e.user_message, cause=e.code) from e
        except Exception as e:  # noqa: BLE001
            safe_notify(self.notifier, NotificationLevel.error, "Login Failed", "Unable to sign in right now.", logger=self.logger)
            raise AuthenticationError(error=str(e)[:200]) from e

        now = self._now()
        with self._lock:
            self._session = Session(
                token=result.token,
                issued_at=now,
                last_activity_at=now,
                expires_at=self._expiry_for(result.token, now),
                state=SessionState.Active,
            )
            self._actor = result.actor
            self._refresh_attempted_for = None
            self._token_issued_at = now
            self._last_sample = None
            self._persist_locked()
        if self.logger is not None:
            self.logger.info(f"Session started for {result.actor.id} ({result.actor.scope}).")
        self._emit("session.started", EventSeverity.INFO, actor_id=result.actor.id, scope=result.actor.scope)
        safe_notify(self.notifier, NotificationLevel.success, "Welcome back!", f"Signed in as {result.actor.id}.", logger=self.logger)
        return result.actor

    def restore_session(self) -> bool:
        """
        Resume a persisted session. Empty, corrupt, expired or disowned records fail
        closed: the record is removed and the controller stays unauthenticated.
        """
        key = self.cfg.storage_key
        try:
            raw = self.kv.get(key)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Session restore skipped; store unreadable: {e}")
            return False
        if not raw:
            return False
        try:
            record = SessionRecord.model_validate(raw)
        except (ValidationError, TypeError, ValueError):
            if self.logger is not None:
                self.logger.warning("Discarding corrupt persisted session.")
            self._clear_persisted()
            return False

        now = self._now()
        if record.expires_at <= now or (now - record.last_activity_at) >= float(self.cfg.idle_timeout_seconds):
            if self.logger is not None:
                self.logger.info("Persisted session already expired; discarding.")
            self._clear_persisted()
            return False

        actor = record.actor
        try:
            fresh = self.auth_backend.get_current_actor()
        except Exception as e:  # noqa: BLE001
            fresh = actor
            if self.logger is not None:
                self.logger.warning(f"Could not confirm restored actor with backend; using persisted scope: {e}")
        if fresh is None or fresh.id != actor.id:
            if self.logger is not None:
                self.logger.warning("Backend does not recognize the persisted session; discarding.")
            self._clear_persisted()
            return False

        with self._lock:
            self._session = Session(
                token=record.token,
                issued_at=record.issued_at,
                last_activity_at=now,
                expires_at=record.expires_at,
                state=SessionState.Active,
            )
            self._actor = fresh
            self._refresh_attempted_for = None
            self._token_issued_at = record.issued_at
            self._persist_locked()
        self._emit("session.restored", EventSeverity.INFO, actor_id=fresh.id, scope=fresh.scope)
        return True

    # ---- monitoring ----
    def start_monitoring(
        self,
        on_expiry: Optional[Callable[[], None]] = None,
        on_idle_warning: Optional[Callable[[float], None]] = None,
        on_activity_resumed: Optional[Callable[[], None]] = None,
    ) -> bool:
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            if on_expiry is not None:
                self._on_expiry = on_expiry
            if on_idle_warning is not None:
                self._on_idle_warning = on_idle_warning
            if on_activity_resumed is not None:
                self._on_activity_resumed = on_activity_resumed
            s = self._session
            if s is None or s.state not in LIVE_STATES or self._tearing_down:
                return False
            self._stop_timers_locked()
            self._monitoring = True
            callbacks = self._check_deadlines_locked()
            if self._monitoring:
                self._arm_idle_locked()
                self._arm_token_locked()
                self._arm_tick_locked()
        self._run_callbacks(callbacks)
        return self.is_monitoring

    def stop_monitoring(self) -> None:
        with self._lock:
            self._stop_timers_locked()
            self._on_expiry = None
            self._on_idle_warning = None
            self._on_activity_resumed = None

    # ---- activity ----
    def record_activity(self, source: str = "input") -> bool:
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            s = self._session
            if s is None or self._tearing_down or s.state not in LIVE_STATES:
                if self.logger is not None:
                    self.logger.debug(f"Activity ({source}) ignored; no live session.")
                return False
            callbacks = self._check_deadlines_locked(ignore_warning=True)
            if s.state not in LIVE_STATES:
                accepted = False
            else:
                accepted = True
                now = self._now()
                debounce = float(self.cfg.activity_debounce_seconds)
                if s.state == SessionState.Active and debounce > 0 and (now - s.last_activity_at) < debounce:
                    return True
                s.last_activity_at = now
                persisted = self._persisted_activity_at
                if s.state == SessionState.IdleWarning or persisted is None or (now - persisted) >= float(self.cfg.persist_interval_seconds):
                    self._persist_locked()
                if s.state == SessionState.IdleWarning:
                    self._transition(SessionState.Active, reason=source)
                    self._emit("session.activity_resumed", EventSeverity.INFO, source=source)
                    if self._on_activity_resumed is not None:
                        callbacks.append(self._on_activity_resumed)
                if self._monitoring:
                    self._arm_idle_locked()
        self._run_callbacks(callbacks)
        return accepted

    def extend_session(self) -> bool:
        ok = self.record_activity(source="extend")
        if ok and self.logger is not None:
            self.logger.info("Session extended by user.")
        return ok

    # ---- token refresh ----
    def refresh_token(self) -> bool:
        with self._lock:
            target = self._session
            if target is None or target.state not in LIVE_STATES or self._tearing_down or self._refreshing:
                return False
            self._refreshing = True
            self._refresh_attempted_for = target.expires_at

        token: Optional[AuthToken] = None
        last_error: Optional[BaseException] = None
        try:
            for attempt in range(int(self.cfg.refresh_attempts)):
                try:
                    got = self.auth_backend.refresh_token()
                    token = got if isinstance(got, AuthToken) else AuthToken.model_validate(got)
                    break
                except Exception as e:  # noqa: BLE001
                    last_error = e
                    if self.logger is not None:
                        self.logger.warning(f"Token refresh attempt {attempt + 1} failed: {e}")
        finally:
            with self._lock:
                self._refreshing = False

        callbacks: List[Callable[[], None]] = []
        with self._lock:
            if self._session is not target or target.state not in LIVE_STATES:
                return False
            if token is None:
                err = RefreshFailureError(error=str(last_error)[:200] if last_error else "unknown")
                if self.logger is not None:
                    self.logger.warning(f"{err.user_message} ({err.context.get('error')})")
                callbacks = self._expire_locked(reason="refresh_failure")
            else:
                now = self._now()
                target.token = token
                target.expires_at = self._expiry_for(token, now)
                self._token_issued_at = now
                self._persist_locked()
                if self._monitoring:
                    self._arm_token_locked()
                self._emit("session.refreshed", EventSeverity.INFO, expires_in=round(target.expires_at - now, 3))
        self._run_callbacks(callbacks)
        return token is not None

    # ---- logout ----
    def logout(self) -> None:
        """
        Ordered teardown. Readers see "not authenticated" from step 1; a second call
        after completion does nothing.
        """
        with self._lock:
            s = self._session
            if self._tearing_down:
                return
            if s is not None and s.state == SessionState.Terminated:
                if self.logger is not None:
                    self.logger.debug("Logout ignored; session already terminated.")
                return
            self._tearing_down = True
            # 1. timers
            self._stop_timers_locked()
            self._on_expiry = None
            self._on_idle_warning = None
            self._on_activity_resumed = None

        try:
            # 2. persisted material
            self._clear_persisted()
            # 3. backend (best effort)
            if s is not None:
                try:
                    self.auth_backend.logout()
                except Exception as e:  # noqa: BLE001
                    if self.logger is not None:
                        self.logger.warning(f"Backend logout failed (ignored): {e}")
            # 4. impersonation / tenant context
            with self._lock:
                hooks = list(self._teardown_hooks)
            for hook in hooks:
                try:
                    hook()
                except Exception as e:  # noqa: BLE001
                    if self.logger is not None:
                        self.logger.error(f"Logout teardown hook failed: {e}")
            # 5. terminal state
            with self._lock:
                if s is not None and self._session is s:
                    self._transition(SessionState.Terminated, reason="logout")
                self._actor = None
                self._last_sample = None
            # 6. settle
            if float(self.cfg.logout_settle_seconds) > 0:
                self._sleep(float(self.cfg.logout_settle_seconds))
        finally:
            with self._lock:
                self._tearing_down = False

        if s is None:
            return
        if self.logger is not None:
            self.logger.info("Logged out.")
        self._emit("session.logout_complete", EventSeverity.INFO)
        safe_notify(self.notifier, NotificationLevel.info, "Signed out", "You have been signed out.", logger=self.logger)

    def shutdown(self) -> None:
        self.stop_monitoring()

    # ---- state machine ----
    def _transition(self, new_state: SessionState, *, reason: str) -> None:
        s = self._session
        if s is None:
            raise StateTransitionError(to_state=new_state.value, reason=reason)
        old = s.state
        if new_state not in ALLOWED_TRANSITIONS.get(old, frozenset()):
            raise StateTransitionError(from_state=old.value, to_state=new_state.value, reason=reason)
        s.state = new_state
        if self.logger is not None:
            self.logger.info(f"Session {old.value} -> {new_state.value} ({reason})")
        self._emit("session.state", EventSeverity.INFO, from_state=old.value, to_state=new_state.value, reason=reason)

    def _check_deadlines_locked(self, *, ignore_warning: bool = False) -> List[Callable[[], None]]:
        s = self._session
        if s is None or s.state not in LIVE_STATES:
            return []
        now = self._now()
        idle = now - s.last_activity_at
        if now >= s.expires_at:
            return self._expire_locked(reason="token_expired")
        if idle >= float(self.cfg.idle_timeout_seconds):
            return self._expire_locked(reason="idle_timeout")
        if not ignore_warning and s.state == SessionState.Active and idle >= self.cfg.warning_at_seconds:
            return self._enter_warning_locked(idle)
        return []

    def _enter_warning_locked(self, idle: float) -> List[Callable[[], None]]:
        remaining = max(0.0, float(self.cfg.idle_timeout_seconds) - idle)
        self._transition(SessionState.IdleWarning, reason="idle")
        self._emit("session.idle_warning", EventSeverity.WARN, remaining_seconds=round(remaining, 3))
        minutes = max(1, int(round(remaining / 60.0)))
        callbacks: List[Callable[[], None]] = [
            lambda: safe_notify(
                self.notifier,
                NotificationLevel.warning,
                "Session Expiring Soon",
                f"Your session will expire in {minutes} minute(s) due to inactivity.",
                logger=self.logger,
            )
        ]
        cb = self._on_idle_warning
        if cb is not None:
            callbacks.append(lambda: cb(remaining))
        return callbacks

    def _expire_locked(self, *, reason: str) -> List[Callable[[], None]]:
        s = self._session
        if s is None or s.state not in LIVE_STATES:
            return []
        on_expiry = self._on_expiry
        self._stop_timers_locked()
        self._transition(SessionState.Expired, reason=reason)
        self._clear_persisted()
        self._emit("session.expired", EventSeverity.WARN, reason=reason)
        notice = SessionExpiredError(reason=reason)
        callbacks: List[Callable[[], None]] = [
            lambda: safe_notify(self.notifier, NotificationLevel.error, "Session Expired", notice.user_message, logger=self.logger)
        ]
        if on_expiry is not None:
            callbacks.append(on_expiry)
        return callbacks

    # ---- timers ----
    def _arm_idle_locked(self) -> None:
        _cancel(self._idle_handle)
        self._idle_gen += 1
        s = self._session
        if s is None or s.state not in LIVE_STATES:
            return
        idle = self._now() - s.last_activity_at
        if s.state == SessionState.Active:
            delay = self.cfg.warning_at_seconds - idle
        else:
            delay = float(self.cfg.idle_timeout_seconds) - idle
        gen = self._idle_gen
        self._idle_handle = self.scheduler.call_later(max(0.0, delay), lambda: self._on_idle_timer(gen))

    def _on_idle_timer(self, gen: int) -> None:
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            if not self._monitoring or gen != self._idle_gen:
                return
            s = self._session
            if s is None or s.state not in LIVE_STATES:
                return
            callbacks = self._check_deadlines_locked()
            if self._monitoring:
                self._arm_idle_locked()
        self._run_callbacks(callbacks)

    def _arm_token_locked(self) -> None:
        _cancel(self._token_handle)
        self._token_gen += 1
        s = self._session
        if s is None or s.state not in LIVE_STATES:
            return
        remaining = s.expires_at - self._now()
        # short-lived tokens refresh at half their lifetime, never back to back
        lifetime = s.expires_at - self._token_issued_at
        lead = min(float(self.cfg.refresh_lead_seconds), max(0.0, lifetime / 2.0))
        gen = self._token_gen
        if self.cfg.auto_refresh and remaining > 0 and self._refresh_attempted_for != s.expires_at:
            self._token_handle = self.scheduler.call_later(max(0.0, remaining - lead), lambda: self._on_token_timer(gen, True))
        else:
            self._token_handle = self.scheduler.call_later(max(0.0, remaining), lambda: self._on_token_timer(gen, False))

    def _on_token_timer(self, gen: int, refresh: bool) -> None:
        callbacks: List[Callable[[], None]] = []
        with self._lock:
            if not self._monitoring or gen != self._token_gen:
                return
            s = self._session
            if s is None or s.state not in LIVE_STATES:
                return
            if not refresh:
                callbacks = self._check_deadlines_locked(ignore_warning=True)
                if self._monitoring:
                    self._arm_token_locked()
        if refresh:
            # network call happens outside the lock
            self.refresh_token()
            return
        self._run_callbacks(callbacks)

    def _arm_tick_locked(self) -> None:
        _cancel(self._tick_handle)
        self._tick_gen += 1
        gen = self._tick_gen
        self._tick_handle = self.scheduler.call_later(float(self.cfg.sample_interval_seconds), lambda: self._on_tick(gen))

    def _on_tick(self, gen: int) -> None:
        with self._lock:
            if not self._monitoring or gen != self._tick_gen:
                return
            self._last_sample = self._info_locked()
            self._arm_tick_locked()

    def _stop_timers_locked(self) -> None:
        self._monitoring = False
        self._idle_gen += 1
        self._token_gen += 1
        self._tick_gen += 1
        for h in (self._idle_handle, self._token_handle, self._tick_handle):
            _cancel(h)
        self._idle_handle = None
        self._token_handle = None
        self._tick_handle = None

    # ---- helpers ----
    def _info_locked(self) -> SessionInfo:
        now = self._now()
        s = self._session
        if s is None:
            return SessionInfo(is_valid=False, sampled_at=now)
        live = s.state in LIVE_STATES
        idle = max(0.0, now - s.last_activity_at) if live else 0.0
        valid = (
            live
            and not self._tearing_down
            and self._actor is not None
            and now < s.expires_at
            and idle < float(self.cfg.idle_timeout_seconds)
        )
        return SessionInfo(
            is_valid=valid,
            state=s.state,
            time_until_expiry=max(0.0, s.expires_at - now) if live else 0.0,
            idle_time=idle,
            warning_remaining=max(0.0, float(self.cfg.idle_timeout_seconds) - idle) if s.state == SessionState.IdleWarning else None,
            actor_id=self._actor.id if self._actor is not None else None,
            sampled_at=now,
        )

    def _expiry_for(self, token: AuthToken, now: float) -> float:
        if token.expires_at is not None:
            return float(token.expires_at)
        return now + float(self.cfg.session_timeout_seconds)

    def _persist_locked(self) -> None:
        s = self._session
        if s is None or self._actor is None:
            return
        record = SessionRecord(
            actor=self._actor,
            token=s.token,
            issued_at=s.issued_at,
            last_activity_at=s.last_activity_at,
            expires_at=s.expires_at,
        )
        try:
            self.kv.set(self.cfg.storage_key, record.model_dump(mode="json"))
            self._persisted_activity_at = s.last_activity_at
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Session not persisted: {e}")

    def _clear_persisted(self) -> None:
        self._persisted_activity_at = None
        try:
            self.kv.remove(self.cfg.storage_key)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"Persisted session not cleared: {e}")

    def _run_callbacks(self, callbacks: List[Callable[[], None]]) -> None:
        for cb in callbacks:
            try:
                cb()
            except Exception as e:  # noqa: BLE001
                if self.logger is not None:
                    self.logger.error(f"Session callback failed: {e}")

    def _emit(self, event_type: str, severity: EventSeverity, **payload: Any) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.emit(event_type, source=SourceSubsystem.session, severity=severity, **payload)
        except Exception:
            pass


def _cancel(handle: Any) -> None:
    if handle is None:
        return
    try:
        handle.cancel()
    except Exception:
        pass
