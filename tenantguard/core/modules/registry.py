from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from tenantguard.core.errors import DependencyCycleError, ModuleInitError, ModuleRegistrationError
from tenantguard.core.events import EventSeverity, SourceSubsystem
from tenantguard.core.modules.models import (
    InitFailure,
    InitSummary,
    ModuleClassification,
    ModuleDescriptor,
    normalize_module_name,
)


@dataclass(frozen=True)
class RegisteredModule:
    descriptor: ModuleDescriptor
    setup: Optional[Callable[[], None]] = None

    @property
    def name(self) -> str:
        return self.descriptor.name


class ModuleRegistry:
    """
    Registered capability modules, their dependency graph and their classification.

    Classification is fixed at construction from two disjoint name sets. A descriptor
    whose declared classification disagrees with those sets is rejected at register().
    Each module's setup runs at most once, after all of its dependencies.
    """

    def __init__(
        self,
        *,
        operator_modules: Iterable[str],
        tenant_modules: Iterable[str],
        logger=None,
        event_bus=None,
    ) -> None:
        self._operator: FrozenSet[str] = frozenset(normalize_module_name(n) for n in operator_modules if normalize_module_name(n))
        self._tenant: FrozenSet[str] = frozenset(normalize_module_name(n) for n in tenant_modules if normalize_module_name(n))
        overlap = self._operator & self._tenant
        if overlap:
            raise ModuleRegistrationError("Module name sets overlap.", modules=sorted(overlap))
        self.logger = logger
        self.event_bus = event_bus
        self._lock = threading.RLock()
        self._modules: Dict[str, RegisteredModule] = {}
        self._initialized: List[str] = []
        self._failed: Dict[str, str] = {}
        self._init_started = False

    # ---- classification (pure) ----
    def classify(self, name: str) -> Optional[ModuleClassification]:
        n = normalize_module_name(name)
        if n in self._operator:
            return ModuleClassification.OperatorOnly
        if n in self._tenant:
            return ModuleClassification.TenantScoped
        return None

    def is_operator_only(self, name: str) -> bool:
        return self.classify(name) == ModuleClassification.OperatorOnly

    def is_tenant_scoped(self, name: str) -> bool:
        return self.classify(name) == ModuleClassification.TenantScoped

    # ---- registration ----
    def register(self, descriptor: ModuleDescriptor, setup: Optional[Callable[[], None]] = None) -> RegisteredModule:
        expected = self.classify(descriptor.name)
        if expected is None:
            raise ModuleRegistrationError(
                f"Module '{descriptor.name}' is not in the configured operator or tenant module sets.",
                module=descriptor.name,
            )
        if expected != descriptor.classification:
            raise ModuleRegistrationError(
                f"Module '{descriptor.name}' declares {descriptor.classification.value} but is configured as {expected.value}.",
                module=descriptor.name,
            )
        if setup is not None and not callable(setup):
            raise ModuleRegistrationError("Module setup must be callable.", module=descriptor.name)

        reg = RegisteredModule(descriptor=descriptor, setup=setup)
        with self._lock:
            if descriptor.name in self._modules and self.logger is not None:
                self.logger.warning(f"Module '{descriptor.name}' registered again; replacing previous descriptor.")
            if self._init_started and self.logger is not None:
                self.logger.warning(f"Module '{descriptor.name}' registered after initialization began.")
            self._modules[descriptor.name] = reg
            self._failed.pop(descriptor.name, None)
        return reg

    def get(self, name: str) -> Optional[ModuleDescriptor]:
        with self._lock:
            reg = self._modules.get(normalize_module_name(name))
        return reg.descriptor if reg is not None else None

    def list_modules(self) -> List[ModuleDescriptor]:
        with self._lock:
            return [r.descriptor for r in self._modules.values()]

    def names(self) -> List[str]:
        with self._lock:
            return list(self._modules.keys())

    # ---- initialization ----
    def is_initialized(self, name: str) -> bool:
        with self._lock:
            return normalize_module_name(name) in self._initialized

    def initialization_order(self) -> List[str]:
        with self._lock:
            return list(self._initialized)

    def initialize(self, name: str) -> None:
        """
        Initialize `name` after its dependencies (depth-first).

        Raises DependencyCycleError on a cycle, ModuleInitError on a missing dependency,
        a previously failed dependency or a failing setup routine.
        """
        with self._lock:
            self._init_started = True
            self._initialize_locked(normalize_module_name(name), [])

    def initialize_all(self) -> InitSummary:
        summary = InitSummary()
        with self._lock:
            self._init_started = True
            names = list(self._modules.keys())
        for name in names:
            try:
                self.initialize(name)
            except ModuleInitError as e:
                self._record_failure(name, e.user_message)
                summary.failed.append(InitFailure(name=name, error=e.user_message))
                continue
            summary.succeeded.append(name)
        if self.logger is not None:
            self.logger.info(f"Modules initialized: {len(summary.succeeded)} ok, {len(summary.failed)} failed.")
        self._emit(
            "registry.initialized",
            EventSeverity.WARN if summary.failed else EventSeverity.INFO,
            succeeded=list(summary.succeeded),
            failed=[f.model_dump() for f in summary.failed],
        )
        return summary

    def reset(self) -> None:
        """Forget initialization state (descriptors stay registered)."""
        with self._lock:
            self._initialized = []
            self._failed = {}
            self._init_started = False

    # ---- internals ----
    def _initialize_locked(self, name: str, path: List[str]) -> None:
        if name in self._initialized:
            return
        if name in path:
            cycle = path[path.index(name):] + [name]
            raise DependencyCycleError(f"Module dependency cycle: {' -> '.join(cycle)}", cycle=cycle)
        if name in self._failed:
            raise ModuleInitError(f"Module '{name}' previously failed: {self._failed[name]}", module=name)
        reg = self._modules.get(name)
        if reg is None:
            if path:
                raise ModuleInitError(f"Module '{path[-1]}' depends on unregistered module '{name}'.", module=path[-1], dependency=name)
            raise ModuleInitError(f"Module '{name}' is not registered.", module=name)

        path.append(name)
        try:
            for dep in reg.descriptor.dependencies:
                try:
                    self._initialize_locked(dep, path)
                except DependencyCycleError:
                    raise
                except ModuleInitError as e:
                    if dep in self._failed or dep not in self._modules:
                        raise ModuleInitError(f"Module '{name}' dependency '{dep}' unavailable: {e.user_message}", module=name, dependency=dep) from e
                    raise
        finally:
            path.pop()

        if reg.setup is not None:
            try:
                reg.setup()
            except Exception as e:  # noqa: BLE001
                self._failed[name] = str(e) or type(e).__name__
                if self.logger is not None:
                    self.logger.error(f"Module '{name}' setup failed: {e}")
                raise ModuleInitError(f"Module '{name}' setup failed: {self._failed[name]}", module=name) from e
        self._initialized.append(name)
        if self.logger is not None:
            self.logger.info(f"Module '{name}' initialized.")
        self._emit("registry.module_initialized", EventSeverity.INFO, module=name)

    def _record_failure(self, name: str, error: str) -> None:
        with self._lock:
            self._failed.setdefault(name, error)

    def _emit(self, event_type: str, severity: EventSeverity, **payload) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.emit(event_type, source=SourceSubsystem.registry, severity=severity, **payload)
        except Exception:
            pass
