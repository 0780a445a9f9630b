from __future__ import annotations

import pytest

from tenantguard.core.events import BaseEvent, EventBus, EventBusConfig, EventSeverity, SourceSubsystem


def test_subscribers_run_in_priority_order():
    bus = EventBus()
    got = []
    bus.subscribe("session.expired", lambda ev: got.append("late"), priority=90)
    bus.subscribe("session.expired", lambda ev: got.append("early"), priority=10)
    bus.emit("session.expired", source=SourceSubsystem.session, reason="idle_timeout")
    assert got == ["early", "late"]


def test_prefix_and_wildcard_matching():
    bus = EventBus()
    prefix, every = [], []
    bus.subscribe("session.*", lambda ev: prefix.append(ev.event_type))
    bus.subscribe("*", lambda ev: every.append(ev.event_type))
    bus.emit("session.started", source=SourceSubsystem.session)
    bus.emit("access.decision", source=SourceSubsystem.access)
    assert prefix == ["session.started"]
    assert every == ["session.started", "access.decision"]


def test_handler_exception_isolated_and_reported():
    bus = EventBus()
    ok = {"n": 0}
    errors = []

    def bad(_ev):  # noqa: ANN001
        raise RuntimeError("boom")

    def good(_ev):  # noqa: ANN001
        ok["n"] += 1

    bus.subscribe("registry.initialized", bad, priority=10)
    bus.subscribe("registry.initialized", good, priority=20)
    bus.subscribe("error.raised", errors.append)
    bus.emit("registry.initialized", source=SourceSubsystem.registry)
    assert ok["n"] == 1
    assert len(errors) == 1
    assert errors[0].severity == EventSeverity.ERROR
    assert bus.get_stats()["handler_errors_total"] == 1


def test_failing_error_handler_does_not_recurse():
    bus = EventBus()

    def bad(_ev):  # noqa: ANN001
        raise RuntimeError("boom")

    bus.subscribe("*", bad)
    assert bus.emit("app.initialized", source=SourceSubsystem.app) is True
    assert bus.get_stats()["per_type_published"] == {"app.initialized": 1, "error.raised": 1}


def test_payload_is_redacted():
    bus = EventBus()
    got = []
    bus.subscribe("*", got.append)
    bus.emit("session.started", source=SourceSubsystem.session, access_token="abc", actor_id="u1")
    assert got[0].payload == {"access_token": "***REDACTED***", "actor_id": "u1"}


def test_non_json_payload_is_rejected_quietly():
    bus = EventBus()
    assert bus.emit("session.started", source=SourceSubsystem.session, obj=object()) is False


def test_disabled_bus_and_unsubscribe():
    bus = EventBus(cfg=EventBusConfig(enabled=False))
    assert bus.emit("x.y", source=SourceSubsystem.app) is False

    bus = EventBus()
    got = []
    handler = got.append
    bus.subscribe("*", handler)
    assert bus.unsubscribe(handler) == 1
    bus.emit("x.y", source=SourceSubsystem.app)
    assert got == []


def test_recent_events_are_kept():
    bus = EventBus()
    for i in range(3):
        bus.emit("app.tick", source=SourceSubsystem.app, i=i)
    recent = bus.dump_recent(2)
    assert [r["payload"]["i"] for r in recent] == [2, 1]


def test_event_type_required():
    with pytest.raises(ValueError):
        BaseEvent(event_type=" ", source_subsystem=SourceSubsystem.app)


def test_events_are_frozen_and_payload_must_be_an_object():
    ev = BaseEvent(event_type="session.started", source_subsystem=SourceSubsystem.session, payload={"actor_id": "u1"})
    with pytest.raises(ValueError):
        ev.event_type = "session.expired"
    with pytest.raises(ValueError):
        BaseEvent(event_type="session.started", source_subsystem=SourceSubsystem.session, payload=["not", "a", "dict"])
    with pytest.raises(ValueError):
        BaseEvent(event_type="session.started", source_subsystem=SourceSubsystem.session, payload={"when": object()})


def test_event_payload_secrets_are_redacted_at_construction():
    ev = BaseEvent(event_type="session.refreshed", source_subsystem=SourceSubsystem.session, payload={"refresh_token": "r", "expires_in": 60})
    assert ev.payload == {"refresh_token": "***REDACTED***", "expires_in": 60}
