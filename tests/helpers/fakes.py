from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenantguard.core.errors import AuthenticationError
from tenantguard.core.identity.models import Actor, AuthResult, AuthToken


class FakeClock:
    def __init__(self, start: float = 0.0):
        self._t = float(start)

    def time(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)


class _Handle:
    def __init__(self, due: float):
        self.due = due
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(FakeClock):
    """
    Virtual-time scheduler: `advance()` moves the clock and fires due callbacks in
    time order, including callbacks scheduled while advancing.
    """

    def __init__(self, start: float = 0.0):
        super().__init__(start)
        self._seq = itertools.count()
        self._heap: List[Tuple[float, int, _Handle, Callable[[], None]]] = []

    def call_later(self, delay: float, fn: Callable[[], None]) -> _Handle:
        h = _Handle(self._t + max(0.0, float(delay)))
        heapq.heappush(self._heap, (h.due, next(self._seq), h, fn))
        return h

    def advance(self, seconds: float) -> None:
        target = self._t + float(seconds)
        while self._heap and self._heap[0][0] <= target:
            due, _, h, fn = heapq.heappop(self._heap)
            if h.cancelled:
                continue
            self._t = max(self._t, due)
            fn()
        self._t = target

    def advance_to(self, t: float) -> None:
        self.advance(float(t) - self._t)

    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._heap if not h.cancelled)

    def shutdown(self) -> None:
        for _, _, h, _ in self._heap:
            h.cancel()
        self._heap = []


def operator_actor(actor_id: str = "op-1") -> Actor:
    return Actor(id=actor_id, is_operator=True, role="super_admin")


def tenant_actor(actor_id: str = "user-1", tenant_id: str = "tenant-a", grants=()) -> Actor:
    return Actor(id=actor_id, tenant_id=tenant_id, role="agent", granted_permissions=frozenset(grants))


class FakeAuthBackend:
    """
    In-memory AuthBackend. Tokens expire `token_ttl` seconds after issue on the
    supplied clock (None -> no expiry, the controller applies its own timeout).
    """

    name = "fake"

    def __init__(self, actor: Optional[Actor] = None, *, clock: Any = None, token_ttl: Optional[float] = None):
        self.actor = actor or tenant_actor()
        self.clock = clock or FakeClock()
        self.token_ttl = token_ttl
        self.fail_login = False
        self.fail_refresh = False
        self.fail_logout = False
        self.current_actor: Any = "same"
        self.login_calls = 0
        self.logout_calls = 0
        self.refresh_calls = 0
        self.calls: List[str] = []

    def _token(self) -> AuthToken:
        now = self.clock.time()
        exp = now + self.token_ttl if self.token_ttl is not None else None
        return AuthToken(value=f"tok-{self.login_calls}-{self.refresh_calls}", issued_at=now, expires_at=exp, refresh_token="r")

    def login(self, credentials: Dict[str, Any]) -> AuthResult:
        self.login_calls += 1
        self.calls.append("login")
        if self.fail_login:
            raise AuthenticationError("Invalid credentials.")
        return AuthResult(actor=self.actor, token=self._token())

    def logout(self) -> None:
        self.logout_calls += 1
        self.calls.append("backend.logout")
        if self.fail_logout:
            raise RuntimeError("network down")

    def refresh_token(self) -> AuthToken:
        self.refresh_calls += 1
        self.calls.append("refresh")
        if self.fail_refresh:
            raise RuntimeError("refresh rejected")
        return self._token()

    def get_current_actor(self) -> Optional[Actor]:
        if self.current_actor == "same":
            return self.actor
        if isinstance(self.current_actor, Exception):
            raise self.current_actor
        return self.current_actor


@dataclass
class RecordingNotifier:
    notices: List[Tuple[str, str, str]] = field(default_factory=list)

    def notify(self, level, title: str, detail: str) -> None:  # noqa: ANN001
        self.notices.append((getattr(level, "value", str(level)), title, detail))

    def titles(self) -> List[str]:
        return [t for _, t, _ in self.notices]


class FakePredicate:
    def __init__(self, granted=(), *, fail: bool = False):
        self.granted = set(granted)
        self.fail = fail
        self.calls: List[str] = []

    def has_permission(self, permission_key: str) -> bool:
        self.calls.append(permission_key)
        if self.fail:
            raise RuntimeError("permission service unavailable")
        return permission_key in self.granted


class DummyLogger:
    def __init__(self) -> None:
        self.records: List[Tuple[str, str]] = []

    def debug(self, msg, *_a, **_k):  # noqa: ANN001
        self.records.append(("debug", str(msg)))

    def info(self, msg, *_a, **_k):  # noqa: ANN001
        self.records.append(("info", str(msg)))

    def warning(self, msg, *_a, **_k):  # noqa: ANN001
        self.records.append(("warning", str(msg)))

    def error(self, msg, *_a, **_k):  # noqa: ANN001
        self.records.append(("error", str(msg)))

    def messages(self, level: str) -> List[str]:
        return [m for lvl, m in self.records if lvl == level]


class EventCapture:
    """Subscribes to every event on a bus and keeps them in order."""

    def __init__(self, bus) -> None:  # noqa: ANN001
        self.events: List[Any] = []
        bus.subscribe("*", self.events.append)

    def types(self) -> List[str]:
        return [e.event_type for e in self.events]

    def of(self, event_type: str) -> List[Any]:
        return [e for e in self.events if e.event_type == event_type]
