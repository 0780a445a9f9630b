from __future__ import annotations

import pytest

from tenantguard.core.config.models import SessionConfig
from tenantguard.core.events import EventBus
from tenantguard.core.modules.defaults import OPERATOR_MODULES, TENANT_MODULES, default_module_catalog
from tenantguard.core.modules.registry import ModuleRegistry

from .helpers.fakes import DummyLogger, FakeScheduler, RecordingNotifier


@pytest.fixture
def scheduler():
    return FakeScheduler(start=0.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def logger():
    return DummyLogger()


@pytest.fixture
def bus():
    return EventBus(logger=None)


@pytest.fixture
def session_cfg():
    # long ticks keep virtual-time runs short; refresh is covered by its own tests
    return SessionConfig(sample_interval_seconds=60.0, logout_settle_seconds=0.0, auto_refresh=False, session_timeout_seconds=86_400.0)


@pytest.fixture
def catalog_registry():
    reg = ModuleRegistry(operator_modules=OPERATOR_MODULES, tenant_modules=TENANT_MODULES)
    for desc in default_module_catalog():
        reg.register(desc)
    return reg
