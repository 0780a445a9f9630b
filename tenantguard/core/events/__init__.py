"""
In-process lifecycle events + payload redaction.
"""

from tenantguard.core.events.redaction import redact
from tenantguard.core.events.models import BaseEvent, EventSeverity, SourceSubsystem
from tenantguard.core.events.bus import EventBus, EventBusConfig

__all__ = [
    "redact",
    "BaseEvent",
    "EventSeverity",
    "SourceSubsystem",
    "EventBus",
    "EventBusConfig",
]
