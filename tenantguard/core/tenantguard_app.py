from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tenantguard.core.access.audit import AccessAuditLogger
from tenantguard.core.access.engine import AccessControlEngine
from tenantguard.core.access.models import AccessDecision
from tenantguard.core.auth.notifications import LoggingNotificationSink
from tenantguard.core.config.models import TenantGuardConfig
from tenantguard.core.errors import PermissionDeniedError
from tenantguard.core.events import EventBus, EventSeverity, SourceSubsystem
from tenantguard.core.identity.models import Actor
from tenantguard.core.impersonation.manager import ImpersonationManager
from tenantguard.core.impersonation.models import ImpersonationActionType, ImpersonationSession
from tenantguard.core.impersonation.tracker import ImpersonationAuditTracker
from tenantguard.core.modules.defaults import default_module_catalog
from tenantguard.core.modules.models import InitSummary, ModuleDescriptor
from tenantguard.core.modules.registry import ModuleRegistry
from tenantguard.core.session.controller import SessionLifecycleController
from tenantguard.core.session.models import SessionInfo
from tenantguard.core.storage.kv import kv_from_config
from tenantguard.core.timers import ThreadingScheduler


ModuleSpec = Tuple[ModuleDescriptor, Optional[Callable[[], None]]]


class TenantGuardApp:
    """
    Composition root: one registry, access engine, session controller and impersonation
    stack per instance. `init()` registers and initializes modules and resumes a persisted
    session; `teardown()` stops every timer. Nothing here is a module-level global.
    """

    def __init__(
        self,
        *,
        auth_backend: Any,
        cfg: Optional[TenantGuardConfig] = None,
        permission_predicate: Any = None,
        kv: Any = None,
        notifier: Any = None,
        scheduler: Any = None,
        event_bus: Optional[EventBus] = None,
        access_audit: Optional[AccessAuditLogger] = None,
        audit_sink: Any = None,
        logger=None,
        now: Any = None,
        sleep: Any = None,
        on_expiry: Optional[Callable[[], None]] = None,
        on_idle_warning: Optional[Callable[[float], None]] = None,
        on_activity_resumed: Optional[Callable[[], None]] = None,
    ):
        self.cfg = cfg or TenantGuardConfig()
        self.logger = logger
        self._now = now or time.time
        self.event_bus = event_bus or EventBus(logger=logger)
        self.kv = kv if kv is not None else kv_from_config(self.cfg.storage, logger=logger)
        self.notifier = notifier or LoggingNotificationSink(logger)
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or ThreadingScheduler(name="tenantguard-session")

        self.registry = ModuleRegistry(
            operator_modules=self.cfg.access.operator_modules,
            tenant_modules=self.cfg.access.tenant_modules,
            logger=logger,
            event_bus=self.event_bus,
        )
        self.access = AccessControlEngine(
            registry=self.registry,
            predicate=permission_predicate,
            audit=access_audit,
            logger=logger,
            event_bus=self.event_bus,
            decision_ttl_seconds=self.cfg.access.decision_ttl_seconds,
            audit_allowed=self.cfg.access.audit_allowed,
            now=self._now,
        )
        self.session = SessionLifecycleController(
            auth_backend=auth_backend,
            cfg=self.cfg.session,
            kv=self.kv,
            notifier=self.notifier,
            scheduler=self.scheduler,
            event_bus=self.event_bus,
            logger=logger,
            now=self._now,
            sleep=sleep,
        )
        self.tracker = ImpersonationAuditTracker(
            max_actions_per_session=self.cfg.impersonation.max_actions_per_session,
            sink=audit_sink,
            logger=logger,
            event_bus=self.event_bus,
            now=self._now,
        )
        self.impersonation = ImpersonationManager(
            cfg=self.cfg.impersonation,
            tracker=self.tracker,
            kv=self.kv,
            logger=logger,
            event_bus=self.event_bus,
            now=self._now,
        )
        # logout step 4: impersonation and tenant context
        self.session.add_teardown_hook(self.impersonation.clear)
        self.session.add_teardown_hook(self.access.invalidate)

        self._host_on_expiry = on_expiry
        self._host_on_idle_warning = on_idle_warning
        self._host_on_activity_resumed = on_activity_resumed
        self._lock = threading.Lock()
        self._initialized = False
        self.init_summary: Optional[InitSummary] = None

    # ---- lifecycle ----
    def init(self, *, modules: Optional[Iterable[ModuleSpec]] = None, restore: bool = True) -> InitSummary:
        with self._lock:
            if self._initialized and self.init_summary is not None:
                return self.init_summary
            if modules is not None:
                specs: List[ModuleSpec] = list(modules)
            else:
                # stock modules the configured name sets leave out are not registered
                specs = [(d, None) for d in default_module_catalog() if self.registry.classify(d.name) == d.classification]
            for desc, setup in specs:
                self.registry.register(desc, setup)
            summary = self.registry.initialize_all()
            self.init_summary = summary
            self._initialized = True
        if restore and self.session.restore_session():
            self.impersonation.restore(self.session.current_actor)
            self._start_monitoring()
        self._emit("app.initialized", modules=len(summary.succeeded), failed=len(summary.failed))
        return summary

    def teardown(self) -> None:
        self.session.stop_monitoring()
        if self._owns_scheduler:
            try:
                self.scheduler.shutdown()
            except Exception:
                pass
        self.access.invalidate()
        with self._lock:
            self.registry.reset()
            self._initialized = False
            self.init_summary = None
        self._emit("app.teardown")

    # ---- session surface ----
    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    @property
    def current_actor(self) -> Optional[Actor]:
        return self.session.current_actor

    def get_session_info(self) -> SessionInfo:
        return self.session.get_session_info()

    def login(self, credentials: Dict[str, Any]) -> Actor:
        self.impersonation.clear()
        self.access.invalidate()
        actor = self.session.login(credentials)
        self._start_monitoring()
        return actor

    def logout(self) -> None:
        self.session.logout()

    def record_activity(self, source: str = "input") -> bool:
        return self.session.record_activity(source)

    def extend_session(self) -> bool:
        return self.session.extend_session()

    # ---- access surface ----
    def access_decision(self, module_key: str) -> AccessDecision:
        return self.access.can_access(self.current_actor, module_key)

    def can_access_module(self, module_key: str) -> bool:
        return self.access_decision(module_key).allowed

    def list_accessible_modules(self) -> List[str]:
        return [d.name for d in self.access.list_accessible_modules(self.current_actor)]

    # ---- impersonation surface ----
    @property
    def impersonation_session(self) -> Optional[ImpersonationSession]:
        return self.impersonation.active()

    def start_impersonation(self, target_actor_id: str, *, tenant_id: str, reason: Optional[str] = None) -> ImpersonationSession:
        actor = self.current_actor
        if actor is None:
            raise PermissionDeniedError("Sign in before starting impersonation.")
        return self.impersonation.start(actor, target_actor_id, tenant_id=tenant_id, reason=reason)

    def end_impersonation(self) -> Optional[ImpersonationSession]:
        return self.impersonation.end()

    def track_action(
        self,
        action_type: ImpersonationActionType,
        resource: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.tracker.track(self.impersonation.current_session_id(), action_type, resource, resource_id=resource_id, metadata=metadata)

    # ---- internals ----
    def _start_monitoring(self) -> None:
        self.session.start_monitoring(
            on_expiry=self._handle_expiry,
            on_idle_warning=self._handle_idle_warning,
            on_activity_resumed=self._handle_activity_resumed,
        )

    def _handle_expiry(self) -> None:
        self.impersonation.clear()
        self.access.invalidate()
        if self._host_on_expiry is not None:
            self._host_on_expiry()

    def _handle_idle_warning(self, remaining: float) -> None:
        if self._host_on_idle_warning is not None:
            self._host_on_idle_warning(remaining)

    def _handle_activity_resumed(self) -> None:
        if self._host_on_activity_resumed is not None:
            self._host_on_activity_resumed()

    def _emit(self, event_type: str, **payload: Any) -> None:
        try:
            self.event_bus.emit(event_type, source=SourceSubsystem.app, severity=EventSeverity.INFO, **payload)
        except Exception:
            pass
