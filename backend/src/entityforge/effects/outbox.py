"""Effect sinks.

The engine hands side effects to an EffectSink. ``dispatch_sync`` is awaited
inside the write transaction for ``before_*`` webhooks and may veto the
write; every other method is called only after commit and never vetoes.
"""

import logging
from typing import Callable, Protocol

from entityforge.effects.types import (
    DeferredAction,
    DispatchResult,
    WebhookRequest,
    WorkflowTrigger,
)

logger = logging.getLogger(__name__)


class EffectSink(Protocol):
    async def dispatch_sync(self, request: WebhookRequest) -> DispatchResult:
        ...

    async def enqueue_webhook(self, request: WebhookRequest) -> None:
        ...

    async def emit_workflow_trigger(self, trigger: WorkflowTrigger) -> None:
        ...

    async def submit_action(self, action: DeferredAction) -> None:
        ...


class LoggingSink:
    """Default sink when no delivery collaborator is configured.

    Every effect is logged and dropped; synchronous deliveries succeed, so
    nothing is vetoed. Real delivery plugs in through the ``effects``
    argument of ``WritePipeline`` and ``create_app``.
    """

    async def dispatch_sync(self, request: WebhookRequest) -> DispatchResult:
        logger.info(
            "No delivery configured; webhook '%s' (%s %s) not sent",
            request.webhook_id, request.action, request.entity,
        )
        return DispatchResult(ok=True, status=200)

    async def enqueue_webhook(self, request: WebhookRequest) -> None:
        logger.info(
            "No delivery configured; dropping webhook '%s' (%s %s)",
            request.webhook_id, request.action, request.entity,
        )

    async def emit_workflow_trigger(self, trigger: WorkflowTrigger) -> None:
        logger.info(
            "No workflow scheduler configured; dropping %s.%s trigger %s -> %s",
            trigger.entity, trigger.field, trigger.from_state, trigger.to_state,
        )

    async def submit_action(self, action: DeferredAction) -> None:
        logger.info("No action runner configured; dropping %s action for %s", action.type, action.entity)


class InMemoryOutbox:
    """Records every effect in memory, for tests.

    ``responder`` decides the outcome of synchronous
    deliveries; by default every delivery succeeds.
    """

    def __init__(self, responder: Callable[[WebhookRequest], DispatchResult] | None = None):
        self.responder = responder or (lambda request: DispatchResult(ok=True, status=200))
        self.dispatched: list[WebhookRequest] = []
        self.webhooks: list[WebhookRequest] = []
        self.triggers: list[WorkflowTrigger] = []
        self.actions: list[DeferredAction] = []

    async def dispatch_sync(self, request: WebhookRequest) -> DispatchResult:
        self.dispatched.append(request)
        return self.responder(request)

    async def enqueue_webhook(self, request: WebhookRequest) -> None:
        self.webhooks.append(request)

    async def emit_workflow_trigger(self, trigger: WorkflowTrigger) -> None:
        self.triggers.append(trigger)

    async def submit_action(self, action: DeferredAction) -> None:
        self.actions.append(action)

    @property
    def enqueued_count(self) -> int:
        return len(self.webhooks) + len(self.triggers) + len(self.actions)

    def clear(self) -> None:
        self.dispatched.clear()
        self.webhooks.clear()
        self.triggers.clear()
        self.actions.clear()
