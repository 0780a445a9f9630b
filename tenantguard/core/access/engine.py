from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from tenantguard.core.access.audit import AccessAuditLogger
from tenantguard.core.access.models import AccessDecision, ReasonCode
from tenantguard.core.events import EventSeverity, SourceSubsystem
from tenantguard.core.identity.models import Actor
from tenantguard.core.modules.models import ModuleClassification, ModuleDescriptor, normalize_module_name
from tenantguard.core.modules.registry import ModuleRegistry


_MemoKey = Tuple[str, bool, Optional[str], str]


class AccessControlEngine:
    """
    Deterministic module access evaluation (first matching rule wins):

      1. no actor                         -> deny  Unauthenticated
      2. operator + operator-only module  -> allow OperatorModule
      3. operator + tenant module         -> deny  OperatorIsolation
      4. operator + unknown module        -> deny  UnknownModule
      5. tenant + operator-only module    -> deny  TenantIsolation
      6. tenant + tenant module           -> permission predicate on the module's key
                                             (no key -> deny NoPermissionMapping)
      7. anything else                    -> deny  UnknownModule

    The predicate raising is a deny (EvaluationError), never an error for the caller.
    """

    def __init__(
        self,
        *,
        registry: ModuleRegistry,
        predicate: Any = None,
        audit: Optional[AccessAuditLogger] = None,
        logger=None,
        event_bus=None,
        decision_ttl_seconds: float = 0.0,
        audit_allowed: bool = False,
        now: Any = None,
    ):
        self.registry = registry
        self.predicate = predicate
        self.audit = audit
        self.logger = logger
        self.event_bus = event_bus
        self.decision_ttl_seconds = float(decision_ttl_seconds)
        self.audit_allowed = bool(audit_allowed)
        self._now = now or time.time
        self._lock = threading.Lock()
        self._memo: Dict[_MemoKey, Tuple[float, AccessDecision]] = {}
        self._scopes: Dict[str, Tuple[bool, Optional[str]]] = {}

    def set_predicate(self, predicate: Any) -> None:
        self.predicate = predicate
        self.invalidate()

    def invalidate(self, actor_id: Optional[str] = None) -> None:
        with self._lock:
            if actor_id is None:
                self._memo.clear()
                self._scopes.clear()
                return
            self._drop_actor_locked(str(actor_id))

    def can_access(self, actor: Optional[Actor], module_key: Optional[str], *, trace_id: str = "access") -> AccessDecision:
        dec = self._decide(actor, module_key)
        self._record(dec, actor, trace_id=trace_id)
        return dec

    def list_accessible_modules(self, actor: Optional[Actor]) -> List[ModuleDescriptor]:
        out: List[ModuleDescriptor] = []
        for desc in self.registry.list_modules():
            if self._decide(actor, desc.name).allowed:
                out.append(desc)
        return out

    # ---- rules ----
    def _decide(self, actor: Optional[Actor], module_key: Optional[str]) -> AccessDecision:
        name = normalize_module_name(module_key)
        if actor is None or not getattr(actor, "id", None):
            return self._decision(False, ReasonCode.Unauthenticated, name, None)

        key: _MemoKey = (actor.id, bool(actor.is_operator), actor.tenant_id, name)
        cached = self._memo_get(actor, key)
        if cached is not None:
            return cached

        dec = self._evaluate(actor, name)
        if dec.reason_code != ReasonCode.EvaluationError:
            self._memo_put(key, dec)
        return dec

    def _evaluate(self, actor: Actor, name: str) -> AccessDecision:
        if not name:
            return self._decision(False, ReasonCode.UnknownModule, name, actor.id, detail="empty module key")

        classification = self.registry.classify(name)
        descriptor = self.registry.get(name)
        if descriptor is None:
            # configured but never registered is still unknown
            classification = None

        if actor.is_operator:
            if classification == ModuleClassification.OperatorOnly:
                return self._decision(True, ReasonCode.OperatorModule, name, actor.id)
            if classification == ModuleClassification.TenantScoped:
                return self._decision(False, ReasonCode.OperatorIsolation, name, actor.id)
            return self._decision(False, ReasonCode.UnknownModule, name, actor.id)

        if classification == ModuleClassification.OperatorOnly:
            return self._decision(False, ReasonCode.TenantIsolation, name, actor.id)
        if classification == ModuleClassification.TenantScoped and descriptor is not None:
            perm = descriptor.permission_key
            if not perm:
                return self._decision(False, ReasonCode.NoPermissionMapping, name, actor.id)
            try:
                granted = self._has_permission(actor, perm)
            except Exception as e:  # noqa: BLE001
                if self.logger is not None:
                    self.logger.warning(f"Permission predicate failed for '{perm}': {e}")
                return self._decision(False, ReasonCode.EvaluationError, name, actor.id, permission_key=perm, detail=str(e)[:200])
            if granted is True:
                return self._decision(True, ReasonCode.Permitted, name, actor.id, permission_key=perm)
            return self._decision(False, ReasonCode.InsufficientPermission, name, actor.id, permission_key=perm)

        return self._decision(False, ReasonCode.UnknownModule, name, actor.id)

    def _has_permission(self, actor: Actor, permission_key: str) -> Any:
        if self.predicate is None:
            return actor.has_grant(permission_key)
        if callable(getattr(self.predicate, "has_permission", None)):
            return self.predicate.has_permission(permission_key)
        return self.predicate(permission_key)

    def _decision(
        self,
        allowed: bool,
        reason: ReasonCode,
        name: str,
        actor_id: Optional[str],
        *,
        permission_key: Optional[str] = None,
        detail: str = "",
    ) -> AccessDecision:
        return AccessDecision(
            allowed=allowed,
            reason_code=reason,
            module_key=name,
            actor_id=actor_id,
            permission_key=permission_key,
            evaluated_at=self._now(),
            detail=detail,
        )

    # ---- memo ----
    def _memo_get(self, actor: Actor, key: _MemoKey) -> Optional[AccessDecision]:
        if self.decision_ttl_seconds <= 0:
            return None
        with self._lock:
            scope = (bool(actor.is_operator), actor.tenant_id)
            prev = self._scopes.get(actor.id)
            if prev is not None and prev != scope:
                # operator/tenant status changed under the same id
                self._drop_actor_locked(actor.id)
            self._scopes[actor.id] = scope
            hit = self._memo.get(key)
            if hit is None:
                return None
            stored_at, dec = hit
            if (self._now() - stored_at) > self.decision_ttl_seconds:
                self._memo.pop(key, None)
                return None
            return dec

    def _memo_put(self, key: _MemoKey, dec: AccessDecision) -> None:
        if self.decision_ttl_seconds <= 0:
            return
        now = self._now()
        with self._lock:
            self._prune_locked(now)
            self._memo[key] = (now, dec)
            self._scopes.setdefault(key[0], (key[1], key[2]))

    def _prune_locked(self, now: float) -> None:
        for k in [k for k, (stored_at, _) in self._memo.items() if (now - stored_at) > self.decision_ttl_seconds]:
            self._memo.pop(k, None)
        live = {k[0] for k in self._memo}
        for actor_id in [a for a in self._scopes if a not in live]:
            self._scopes.pop(actor_id, None)

    def _drop_actor_locked(self, actor_id: str) -> None:
        for k in [k for k in self._memo if k[0] == actor_id]:
            self._memo.pop(k, None)
        self._scopes.pop(actor_id, None)

    # ---- audit ----
    def _record(self, dec: AccessDecision, actor: Optional[Actor], *, trace_id: str) -> None:
        if dec.allowed and not self.audit_allowed:
            return
        if self.audit is not None:
            try:
                self.audit.log_decision(dec, trace_id=trace_id, tenant_id=getattr(actor, "tenant_id", None))
            except Exception as e:  # noqa: BLE001
                if self.logger is not None:
                    self.logger.warning(f"Access audit write failed: {e}")
        if self.event_bus is not None:
            try:
                self.event_bus.emit(
                    "access.decision",
                    source=SourceSubsystem.access,
                    severity=EventSeverity.INFO if dec.allowed else EventSeverity.WARN,
                    trace_id=trace_id,
                    allowed=dec.allowed,
                    reason=dec.reason_code.value,
                    module=dec.module_key,
                    actor_id=dec.actor_id,
                )
            except Exception:
                pass
