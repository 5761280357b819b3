"""Side effects emitted by the write pipeline."""

from entityforge.effects.outbox import EffectSink, InMemoryOutbox, LoggingSink
from entityforge.effects.types import (
    DeferredAction,
    DispatchResult,
    WebhookRequest,
    WorkflowTrigger,
    compute_changes,
    resolve_headers,
)

__all__ = [
    "DeferredAction",
    "DispatchResult",
    "EffectSink",
    "InMemoryOutbox",
    "LoggingSink",
    "WebhookRequest",
    "WorkflowTrigger",
    "compute_changes",
    "resolve_headers",
]
