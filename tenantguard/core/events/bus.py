from __future__ import annotations

import collections
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tenantguard.core.events.models import BaseEvent, EventSeverity, SourceSubsystem


class EventBusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    keep_recent: int = Field(default=200, ge=10, le=10_000)


@dataclass
class EventBusStats:
    published_total: int = 0
    delivered_total: int = 0
    handler_errors_total: int = 0
    per_type_published: Dict[str, int] = field(default_factory=dict)


@dataclass
class _Sub:
    event_type: str
    handler: Callable[[BaseEvent], None]
    priority: int


class EventBus:
    """
    In-process lifecycle event bus.

    - delivery is synchronous on the publisher's thread, in subscriber priority order
    - handler failures are isolated (caught) and emitted as error events
    - publishing never raises to the caller
    """

    def __init__(self, *, cfg: Optional[EventBusConfig] = None, logger=None):
        self.cfg = cfg or EventBusConfig()
        self.logger = logger
        self._lock = threading.Lock()
        self._subs: List[_Sub] = []
        self._stats = EventBusStats()
        self._recent: Deque[Dict[str, Any]] = collections.deque(maxlen=int(self.cfg.keep_recent))
        self._delivering_error = False

    def subscribe(self, event_type: str, handler: Callable[[BaseEvent], None], priority: int = 50) -> None:
        """
        event_type supports:
        - exact match ("session.expired")
        - prefix match ("session.*")
        - wildcard all ("*")
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        with self._lock:
            self._subs.append(_Sub(event_type=str(event_type), handler=handler, priority=int(priority)))
            self._subs.sort(key=lambda s: int(s.priority))

    def unsubscribe(self, handler: Callable[[BaseEvent], None]) -> int:
        with self._lock:
            before = len(self._subs)
            self._subs = [s for s in self._subs if s.handler is not handler]
            return before - len(self._subs)

    def publish(self, ev: BaseEvent) -> bool:
        if not self.cfg.enabled:
            return False
        with self._lock:
            self._stats.published_total += 1
            self._stats.per_type_published[ev.event_type] = int(self._stats.per_type_published.get(ev.event_type, 0) + 1)
            self._recent.appendleft(ev.model_dump(mode="json"))
            subs = [s for s in self._subs if _match(s.event_type, ev.event_type)]
        for s in subs:
            self._safe_handle(s.handler, ev)
        return True

    def emit(self, event_type: str, *, source: SourceSubsystem, severity: EventSeverity = EventSeverity.INFO, trace_id: Optional[str] = None, **payload: Any) -> bool:
        try:
            ev = BaseEvent(event_type=event_type, source_subsystem=source, severity=severity, trace_id=trace_id, payload=payload)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.warning(f"event rejected: {event_type}: {e}")
            return False
        return self.publish(ev)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": bool(self.cfg.enabled),
                "published_total": self._stats.published_total,
                "delivered_total": self._stats.delivered_total,
                "handler_errors_total": self._stats.handler_errors_total,
                "subscribers": len(self._subs),
                "per_type_published": dict(self._stats.per_type_published),
            }

    def dump_recent(self, n: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)[: max(1, int(n))]

    def shutdown(self) -> None:
        with self._lock:
            self._subs = []

    # ---- internals ----
    def _safe_handle(self, handler: Callable[[BaseEvent], None], ev: BaseEvent) -> None:
        try:
            handler(ev)
            with self._lock:
                self._stats.delivered_total += 1
        except Exception as e:  # noqa: BLE001
            with self._lock:
                self._stats.handler_errors_total += 1
            if self.logger is not None:
                self.logger.error(f"event handler failed for {ev.event_type}: {e}")
            # one error event per failure, never recursive
            if self._delivering_error or ev.event_type == "error.raised":
                return
            self._delivering_error = True
            try:
                self.publish(
                    BaseEvent(
                        event_type="error.raised",
                        trace_id=ev.trace_id,
                        source_subsystem=ev.source_subsystem,
                        severity=EventSeverity.ERROR,
                        payload={"handler": getattr(handler, "__name__", "handler"), "event_type": ev.event_type, "error": str(e)[:500]},
                    )
                )
            except Exception:
                pass
            finally:
                self._delivering_error = False


def _match(subscribed: str, event_type: str) -> bool:
    subscribed = str(subscribed)
    if subscribed == "*":
        return True
    if subscribed.endswith(".*"):
        return str(event_type).startswith(subscribed[:-2])
    return subscribed == event_type
