from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from tenantguard.core.errors import TrackingError
from tenantguard.core.events import EventSeverity, SourceSubsystem
from tenantguard.core.impersonation.models import (
    CRUD_ACTION_TYPES,
    ImpersonationAction,
    ImpersonationActionType,
)


class ImpersonationAuditTracker:
    """
    In-memory, session-keyed log of actions taken during impersonation windows.

    Tracking is best-effort: every track_* call returns True when an action was
    appended and False otherwise, and never raises into the observed operation.
    """

    def __init__(self, *, max_actions_per_session: int = 1000, sink: Any = None, logger=None, event_bus=None, now: Any = None):
        self.max_actions_per_session = max(1, int(max_actions_per_session))
        self.sink = sink
        self.logger = logger
        self.event_bus = event_bus
        self._now = now or time.time
        self._lock = threading.Lock()
        self._logs: Dict[str, List[ImpersonationAction]] = {}

    # ---- tracking ----
    def track(
        self,
        session_id: Optional[str],
        action_type: ImpersonationActionType,
        resource: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self._track(session_id, action_type, resource, resource_id=resource_id, metadata=metadata)

    def _track(
        self,
        session_id: Optional[str],
        action_type: ImpersonationActionType,
        resource: str,
        *,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            if extra:
                merged = dict(metadata or {})
                merged.update(extra)
                metadata = merged
            return self._append(session_id, action_type, resource, resource_id, metadata)
        except Exception as e:  # noqa: BLE001
            self._failed(TrackingError(session_id=str(session_id or ""), action_type=str(action_type), error=str(e)[:200]))
            return False

    def _append(
        self,
        session_id: Optional[str],
        action_type: ImpersonationActionType,
        resource: str,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> bool:
        sid = str(session_id or "").strip()
        if not sid:
            self._warn("Impersonation action tracked without an active session id; ignored.")
            return False
        try:
            action = ImpersonationAction(
                session_id=sid,
                action_type=ImpersonationActionType(action_type),
                resource=resource,
                resource_id=str(resource_id) if resource_id is not None else None,
                metadata=dict(metadata) if metadata else None,
                timestamp=self._now(),
            )
        except (ValidationError, ValueError, TypeError) as e:
            self._failed(TrackingError(session_id=sid, action_type=str(action_type), error=str(e)[:200]))
            return False
        with self._lock:
            log = self._logs.setdefault(sid, [])
            log.append(action)
            overflow = len(log) - self.max_actions_per_session
            if overflow > 0:
                del log[:overflow]
        if self.logger is not None:
            self.logger.info(f"[impersonation:{sid}] {action.action_type.value} {action.resource}")
        return True

    def track_page_view(self, session_id: Optional[str], page: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        return self.track(session_id, ImpersonationActionType.PageView, page, metadata=metadata)

    def track_api_call(
        self,
        session_id: Optional[str],
        method: str,
        endpoint: str,
        *,
        status: Optional[int] = None,
        duration_ms: Optional[float] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        extra = {"method": str(method or "").upper(), "status": status, "duration_ms": duration_ms}
        return self._track(session_id, ImpersonationActionType.ApiCall, endpoint, resource_id=resource_id, metadata=metadata, extra=extra)

    def track_crud_action(
        self,
        session_id: Optional[str],
        action_type: ImpersonationActionType,
        resource: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            kind = ImpersonationActionType(action_type)
        except ValueError:
            kind = None
        if kind not in CRUD_ACTION_TYPES:
            self._failed(TrackingError("Not a create/update/delete action.", action_type=str(action_type)))
            return False
        return self.track(session_id, kind, resource, resource_id=resource_id, metadata=metadata)

    def track_export(
        self,
        session_id: Optional[str],
        resource: str,
        *,
        export_format: str,
        record_count: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        extra = {"format": export_format, "record_count": record_count}
        return self._track(session_id, ImpersonationActionType.Export, resource, metadata=metadata, extra=extra)

    def track_search(
        self,
        session_id: Optional[str],
        resource: str,
        query: str,
        *,
        result_count: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        extra = {"query": query, "result_count": result_count}
        return self._track(session_id, ImpersonationActionType.Search, resource, metadata=metadata, extra=extra)

    def track_print(self, session_id: Optional[str], resource: str, resource_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> bool:
        return self.track(session_id, ImpersonationActionType.Print, resource, resource_id=resource_id, metadata=metadata)

    # ---- reads ----
    def get_session_actions(self, session_id: Optional[str]) -> List[ImpersonationAction]:
        sid = str(session_id or "").strip()
        if not sid:
            self._warn("get_session_actions called without a session id.")
            return []
        with self._lock:
            return list(self._logs.get(sid, []))

    def get_action_count(self, session_id: Optional[str]) -> int:
        return len(self.get_session_actions(session_id))

    def get_action_summary(self, session_id: Optional[str]) -> Dict[str, int]:
        summary = {t.value: 0 for t in ImpersonationActionType}
        for a in self.get_session_actions(session_id):
            summary[a.action_type.value] += 1
        return summary

    def active_session_ids(self) -> List[str]:
        with self._lock:
            return [sid for sid, log in self._logs.items() if log]

    # ---- lifecycle ----
    def clear_session_actions(self, session_id: Optional[str]) -> int:
        sid = str(session_id or "").strip()
        if not sid:
            self._warn("clear_session_actions called without a session id.")
            return 0
        with self._lock:
            removed = self._logs.pop(sid, [])
        return len(removed)

    def flush_session(self, session_id: Optional[str], *, context: Optional[Dict[str, Any]] = None) -> int:
        """
        Hand the session's log to the durable sink, then clear it.
        Without a sink the log is simply cleared. A failing sink keeps the log.
        """
        sid = str(session_id or "").strip()
        if not sid:
            self._warn("flush_session called without a session id.")
            return 0
        actions = self.get_session_actions(sid)
        if self.sink is not None and actions:
            try:
                self.sink.write_actions(sid, actions, context=dict(context or {}))
            except Exception as e:  # noqa: BLE001
                self._failed(TrackingError("Impersonation audit flush failed.", session_id=sid, error=str(e)[:200]))
                return 0
        self.clear_session_actions(sid)
        if self.event_bus is not None:
            try:
                self.event_bus.emit(
                    "impersonation.flushed",
                    source=SourceSubsystem.impersonation,
                    session_id=sid,
                    action_count=len(actions),
                )
            except Exception:
                pass
        return len(actions)

    # ---- internals ----
    def _warn(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.warning(msg)

    def _failed(self, err: TrackingError) -> None:
        if self.logger is not None:
            self.logger.warning(f"{err.user_message} {err.to_dict().get('context')}")
        if self.event_bus is not None:
            try:
                self.event_bus.emit("impersonation.tracking_failed", source=SourceSubsystem.impersonation, severity=EventSeverity.WARN, **err.to_dict().get("context", {}))
            except Exception:
                pass
