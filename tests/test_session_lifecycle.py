from __future__ import annotations

import pytest

from tenantguard.core.config.models import SessionConfig
from tenantguard.core.errors import AuthenticationError
from tenantguard.core.events import EventBus
from tenantguard.core.session.controller import SessionLifecycleController
from tenantguard.core.session.models import SessionState
from tenantguard.core.storage.kv import MemoryKV

from .helpers.fakes import EventCapture, FakeAuthBackend, tenant_actor


def _make(scheduler, cfg, *, backend=None, notifier=None, kv=None, bus=None):
    backend = backend or FakeAuthBackend(clock=scheduler)
    ctl = SessionLifecycleController(
        auth_backend=backend,
        cfg=cfg,
        kv=kv if kv is not None else MemoryKV(),
        notifier=notifier,
        scheduler=scheduler,
        event_bus=bus,
        now=scheduler.time,
        sleep=lambda _s: None,
    )
    return ctl, backend


class Calls:
    def __init__(self):
        self.expired = 0
        self.warnings = []
        self.resumed = 0

    def on_expiry(self):
        self.expired += 1

    def on_idle_warning(self, remaining):
        self.warnings.append(remaining)

    def on_activity_resumed(self):
        self.resumed += 1


def _start(ctl, calls):
    return ctl.start_monitoring(on_expiry=calls.on_expiry, on_idle_warning=calls.on_idle_warning, on_activity_resumed=calls.on_activity_resumed)


def test_login_starts_an_active_session(scheduler, session_cfg, notifier):
    ctl, backend = _make(scheduler, session_cfg, notifier=notifier)
    actor = ctl.login({"username": "u", "password": "p"})
    assert actor.id == "user-1"
    assert ctl.state == SessionState.Active
    assert ctl.is_authenticated is True
    assert ctl.current_actor == actor
    assert notifier.titles() == ["Welcome back!"]

    scheduler.advance(10)
    info = ctl.get_session_info()
    assert info.idle_time == 10
    assert info.time_until_expiry == 86_400 - 10
    assert info.actor_id == "user-1"


def test_login_failure_notifies_and_raises(scheduler, session_cfg, notifier):
    backend = FakeAuthBackend(clock=scheduler)
    backend.fail_login = True
    ctl, _ = _make(scheduler, session_cfg, backend=backend, notifier=notifier)
    with pytest.raises(AuthenticationError):
        ctl.login({"username": "u", "password": "bad"})
    assert ctl.is_authenticated is False
    assert notifier.titles() == ["Login Failed"]


def test_idle_warning_then_expiry_exactly_once(scheduler, session_cfg, notifier):
    bus = EventBus()
    cap = EventCapture(bus)
    ctl, _ = _make(scheduler, session_cfg, notifier=notifier, bus=bus)
    calls = Calls()
    ctl.login({})
    assert _start(ctl, calls) is True

    scheduler.advance(1499)
    assert ctl.state == SessionState.Active
    scheduler.advance(1)
    assert ctl.state == SessionState.IdleWarning
    assert calls.warnings == [300.0]
    assert ctl.get_session_info().warning_remaining == 300.0
    assert ctl.is_authenticated is True

    scheduler.advance(299)
    assert ctl.state == SessionState.IdleWarning
    scheduler.advance(1)
    assert ctl.state == SessionState.Expired
    assert calls.expired == 1
    assert ctl.is_authenticated is False
    assert ctl.current_actor is None

    scheduler.advance(10_000)
    assert calls.expired == 1
    assert notifier.titles() == ["Welcome back!", "Session Expiring Soon", "Session Expired"]
    assert [e.payload["reason"] for e in cap.of("session.expired")] == ["idle_timeout"]
    assert len(cap.of("session.idle_warning")) == 1


def test_activity_during_warning_resumes_and_postpones(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance_to(1500)
    assert ctl.state == SessionState.IdleWarning
    scheduler.advance_to(1600)
    assert ctl.record_activity("click") is True
    assert ctl.state == SessionState.Active
    assert calls.resumed == 1

    scheduler.advance_to(3099)
    assert ctl.state == SessionState.Active
    scheduler.advance_to(3100)
    assert ctl.state == SessionState.IdleWarning
    assert calls.expired == 0


def test_activity_before_warning_moves_the_deadline(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance_to(1000)
    ctl.record_activity()
    scheduler.advance_to(2499)
    assert ctl.state == SessionState.Active
    assert calls.warnings == []
    scheduler.advance_to(2500)
    assert ctl.state == SessionState.IdleWarning


def test_extend_session_counts_as_activity(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    ctl.login({})
    _start(ctl, Calls())
    scheduler.advance_to(1550)
    assert ctl.extend_session() is True
    assert ctl.state == SessionState.Active
    assert ctl.get_session_info().idle_time == 0


def test_activity_debounce(scheduler):
    cfg = SessionConfig(sample_interval_seconds=60.0, auto_refresh=False, activity_debounce_seconds=5.0, logout_settle_seconds=0.0)
    ctl, _ = _make(scheduler, cfg)
    ctl.login({})
    scheduler.advance(2)
    assert ctl.record_activity() is True
    assert ctl.get_session_info().idle_time == 2
    scheduler.advance(4)
    ctl.record_activity()
    assert ctl.get_session_info().idle_time == 0


def test_late_activity_after_expiry_is_ignored(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)
    scheduler.advance_to(1800)
    assert ctl.state == SessionState.Expired

    assert ctl.record_activity() is False
    assert ctl.extend_session() is False
    assert ctl.state == SessionState.Expired
    assert ctl.start_monitoring(on_expiry=calls.on_expiry) is False


def test_hard_token_expiry_without_refresh(scheduler, session_cfg):
    backend = FakeAuthBackend(clock=scheduler, token_ttl=100)
    bus = EventBus()
    cap = EventCapture(bus)
    ctl, _ = _make(scheduler, session_cfg, backend=backend, bus=bus)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance(99)
    assert ctl.is_authenticated is True
    scheduler.advance(1)
    assert ctl.state == SessionState.Expired
    assert calls.expired == 1
    assert backend.refresh_calls == 0
    assert cap.of("session.expired")[0].payload["reason"] == "token_expired"


def test_refresh_before_expiry_extends_the_token(scheduler):
    cfg = SessionConfig(sample_interval_seconds=60.0, logout_settle_seconds=0.0, refresh_lead_seconds=300.0)
    backend = FakeAuthBackend(clock=scheduler, token_ttl=600)
    ctl, _ = _make(scheduler, cfg, backend=backend)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance_to(300)
    assert backend.refresh_calls == 1
    assert ctl.get_session_info().time_until_expiry == 600
    scheduler.advance_to(1000)
    assert backend.refresh_calls == 3
    assert ctl.state == SessionState.Active
    assert calls.expired == 0


class DriftingTokenBackend(FakeAuthBackend):
    """Each refreshed token ends slightly later than the last, as on a real clock."""

    def _token(self):
        tok = super()._token()
        return tok.model_copy(update={"expires_at": tok.expires_at + self.refresh_calls * 0.001})


def test_short_lived_tokens_refresh_at_half_their_lifetime(scheduler):
    cfg = SessionConfig(sample_interval_seconds=60.0, logout_settle_seconds=0.0, refresh_lead_seconds=300.0)
    backend = DriftingTokenBackend(clock=scheduler, token_ttl=60)
    ctl, _ = _make(scheduler, cfg, backend=backend)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance(0)
    assert backend.refresh_calls == 0
    scheduler.advance_to(29)
    assert backend.refresh_calls == 0
    scheduler.advance_to(30)
    assert backend.refresh_calls == 1
    scheduler.advance_to(300)
    assert backend.refresh_calls <= 10
    assert ctl.state == SessionState.Active
    assert calls.expired == 0


def test_refresh_returning_an_expired_token_ends_the_session(scheduler):
    cfg = SessionConfig(sample_interval_seconds=60.0, logout_settle_seconds=0.0, refresh_lead_seconds=300.0)
    backend = FakeAuthBackend(clock=scheduler, token_ttl=600)
    ctl, _ = _make(scheduler, cfg, backend=backend)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    backend.token_ttl = 0
    scheduler.advance_to(300)
    scheduler.advance(1)
    assert backend.refresh_calls == 1
    assert ctl.state == SessionState.Expired
    assert calls.expired == 1


def test_activity_persists_at_most_once_per_interval(scheduler):
    cfg = SessionConfig(sample_interval_seconds=60.0, auto_refresh=False, logout_settle_seconds=0.0, persist_interval_seconds=30.0)
    kv = MemoryKV()
    ctl, _ = _make(scheduler, cfg, kv=kv)
    ctl.login({})

    scheduler.advance(10)
    ctl.record_activity()
    assert kv.get("session")["last_activity_at"] == 0
    assert ctl.get_session_info().idle_time == 0

    scheduler.advance(25)
    ctl.record_activity()
    assert kv.get("session")["last_activity_at"] == 35


def test_refresh_failure_expires_and_notifies_once(scheduler, notifier):
    cfg = SessionConfig(sample_interval_seconds=60.0, logout_settle_seconds=0.0, refresh_lead_seconds=300.0, refresh_attempts=2)
    backend = FakeAuthBackend(clock=scheduler, token_ttl=600)
    backend.fail_refresh = True
    bus = EventBus()
    cap = EventCapture(bus)
    ctl, _ = _make(scheduler, cfg, backend=backend, notifier=notifier, bus=bus)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)

    scheduler.advance_to(300)
    assert backend.refresh_calls == 2
    assert ctl.state == SessionState.Expired
    assert calls.expired == 1
    scheduler.advance(5_000)
    assert calls.expired == 1
    assert notifier.titles().count("Session Expired") == 1
    assert cap.of("session.expired")[0].payload["reason"] == "refresh_failure"


def test_logout_is_idempotent(scheduler, session_cfg, notifier):
    kv = MemoryKV()
    ctl, backend = _make(scheduler, session_cfg, notifier=notifier, kv=kv)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)
    assert kv.get("session") is not None

    ctl.logout()
    ctl.logout()
    assert backend.logout_calls == 1
    assert ctl.state == SessionState.Terminated
    assert ctl.is_authenticated is False
    assert ctl.current_actor is None
    assert kv.get("session") is None
    assert notifier.titles().count("Signed out") == 1
    assert scheduler.pending() == 0

    scheduler.advance(10_000)
    assert calls.expired == 0


def test_logout_without_a_session_does_nothing(scheduler, session_cfg, notifier):
    ctl, backend = _make(scheduler, session_cfg, notifier=notifier)
    ctl.logout()
    assert backend.logout_calls == 0
    assert notifier.titles() == []


def test_logout_order_and_backend_failure(scheduler, session_cfg):
    kv = MemoryKV()
    backend = FakeAuthBackend(clock=scheduler)
    backend.fail_logout = True
    ctl, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    seen = {}

    def hook():
        seen["monitoring"] = ctl.is_monitoring
        seen["persisted"] = kv.get("session")
        seen["backend_called"] = "backend.logout" in backend.calls
        seen["authenticated"] = ctl.is_authenticated
        seen["state"] = ctl.state

    ctl.add_teardown_hook(hook)
    ctl.login({})
    _start(ctl, Calls())
    ctl.logout()

    assert seen == {
        "monitoring": False,
        "persisted": None,
        "backend_called": True,
        "authenticated": False,
        "state": SessionState.Active,
    }
    assert ctl.state == SessionState.Terminated


def test_failing_teardown_hook_does_not_block_logout(scheduler, session_cfg, logger):
    ctl, _ = _make(scheduler, session_cfg)
    ctl.logger = logger
    ran = []

    def bad():
        raise RuntimeError("hook broke")

    ctl.add_teardown_hook(bad)
    ctl.add_teardown_hook(lambda: ran.append(True))
    ctl.login({})
    ctl.logout()
    assert ran == [True]
    assert ctl.state == SessionState.Terminated
    assert any("hook broke" in m for m in logger.messages("error"))


def test_login_again_after_logout(scheduler, session_cfg):
    ctl, backend = _make(scheduler, session_cfg)
    ctl.login({})
    ctl.logout()
    ctl.login({})
    assert ctl.state == SessionState.Active
    assert backend.login_calls == 2


def test_login_replaces_live_session(scheduler, session_cfg):
    bus = EventBus()
    cap = EventCapture(bus)
    ctl, _ = _make(scheduler, session_cfg, bus=bus)
    ctl.login({})
    ctl.login({})
    reasons = [e.payload["reason"] for e in cap.of("session.state")]
    assert reasons == ["replaced"]
    assert ctl.state == SessionState.Active


def test_stopped_monitoring_leaves_state_alone(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    calls = Calls()
    ctl.login({})
    _start(ctl, calls)
    ctl.stop_monitoring()

    scheduler.advance(5_000)
    assert calls.warnings == []
    assert calls.expired == 0
    assert ctl.state == SessionState.Active
    # readers still fail closed on elapsed deadlines
    assert ctl.is_authenticated is False
    assert ctl.current_actor is None


def test_tick_samples_for_display(scheduler, session_cfg):
    ctl, _ = _make(scheduler, session_cfg)
    ctl.login({})
    _start(ctl, Calls())
    assert ctl.latest_sample() is None
    scheduler.advance(60)
    sample = ctl.latest_sample()
    assert sample is not None
    assert sample.sampled_at == 60
    assert sample.is_valid is True


def test_restore_resumes_a_persisted_session(scheduler, session_cfg):
    kv = MemoryKV()
    first, backend = _make(scheduler, session_cfg, kv=kv)
    first.login({})
    scheduler.advance(100)

    second, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    assert second.restore_session() is True
    assert second.current_actor.id == "user-1"
    assert second.state == SessionState.Active


def test_restore_fails_closed_on_corrupt_record(scheduler, session_cfg):
    kv = MemoryKV({"session": {"garbage": True}})
    ctl, _ = _make(scheduler, session_cfg, kv=kv)
    assert ctl.restore_session() is False
    assert ctl.is_authenticated is False
    assert kv.get("session") is None


def test_restore_discards_idle_expired_record(scheduler, session_cfg):
    kv = MemoryKV()
    first, backend = _make(scheduler, session_cfg, kv=kv)
    first.login({})
    scheduler.advance(1_900)

    second, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    assert second.restore_session() is False
    assert kv.get("session") is None


def test_restore_fails_when_backend_disowns_the_session(scheduler, session_cfg):
    kv = MemoryKV()
    first, backend = _make(scheduler, session_cfg, kv=kv)
    first.login({})

    backend.current_actor = tenant_actor(actor_id="someone-else")
    second, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    assert second.restore_session() is False
    assert kv.get("session") is None

    first.login({})
    backend.current_actor = None
    third, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    assert third.restore_session() is False


def test_restore_keeps_persisted_actor_when_backend_unreachable(scheduler, session_cfg):
    kv = MemoryKV()
    first, backend = _make(scheduler, session_cfg, kv=kv)
    first.login({})
    backend.current_actor = RuntimeError("offline")

    second, _ = _make(scheduler, session_cfg, kv=kv, backend=backend)
    assert second.restore_session() is True
    assert second.current_actor.id == "user-1"
