"""Side-effect requests handed to external collaborators.

- WebhookRequest: delivery request for a webhook hook point
- WorkflowTrigger: a completed state-machine transition
- DeferredAction: a transition action the engine does not execute itself
"""

import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class WebhookRequest:
    """Payload and routing for one webhook delivery.

    Attributes:
        webhook_id: Id of the WebhookDefinition that produced this request
        url / method / headers: Delivery target (headers already resolved)
        event: The hook point ("before_write", "after_delete", ...)
        entity / action: What happened
        record / old: New and previous record state
        changes: {field: {"old": ..., "new": ...}} for updates
        user: {"id", "roles"} of the caller
        timestamp: ISO-8601 UTC time the request was built
        idempotency_key: Unique key for at-most-once delivery downstream
    """

    webhook_id: str
    url: str
    method: str
    headers: dict[str, str]
    event: str
    entity: str
    action: str
    record: dict[str, Any]
    old: dict[str, Any] | None = None
    changes: dict[str, Any] | None = None
    user: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    idempotency_key: str = field(default_factory=lambda: f"wh_{uuid.uuid4()}")

    def payload(self) -> dict[str, Any]:
        """The JSON body sent to the webhook endpoint."""
        body: dict[str, Any] = {
            "event": self.event,
            "entity": self.entity,
            "action": self.action,
            "record": self.record,
            "timestamp": self.timestamp,
            "idempotency_key": self.idempotency_key,
        }
        if self.old is not None:
            body["old"] = self.old
            body["changes"] = self.changes or {}
        if self.user is not None:
            body["user"] = self.user
        return body


@dataclass
class DispatchResult:
    """Outcome of a synchronous webhook delivery."""

    ok: bool
    status: int | None = None
    error: str | None = None


@dataclass
class WorkflowTrigger:
    entity: str
    field: str
    from_state: str | None
    to_state: str
    record: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "field": self.field,
            "from": self.from_state,
            "to": self.to_state,
            "record": self.record,
        }


@dataclass
class DeferredAction:
    """A webhook/create_record/send_event action from a transition."""

    type: str
    entity: str
    config: dict[str, Any] = field(default_factory=dict)
    record_id: Any = None
    record: dict[str, Any] | None = None


def compute_changes(
    record: dict[str, Any], original: dict[str, Any] | None
) -> dict[str, Any] | None:
    """Diff two record states as {field: {"old": ..., "new": ...}}.

    Returns None if original is None (create operations).
    """
    if original is None:
        return None

    changes: dict[str, Any] = {}
    for key, value in record.items():
        if key not in original or original[key] != value:
            changes[key] = {"old": original.get(key), "new": value}
    return changes


_ENV_PLACEHOLDER = re.compile(r"\{\{\s*env\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def resolve_headers(headers: dict[str, str]) -> dict[str, str]:
    """Replace ``{{env.NAME}}`` placeholders in header values."""
    return {
        name: _ENV_PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), ""), str(value))
        for name, value in headers.items()
    }
