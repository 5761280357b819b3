"""Write pipeline orchestration.

One create/update/delete request runs these steps against a single
registry snapshot:

1. Role gate: the caller must hold a role of some matching policy
2. Load the stored record (update/delete) and re-check with conditions
3. Split the payload, reject unknown fields and malformed values
4. State machines (create/update)
5. before_write / before_delete rules
6. Plan the nested write
7. One transaction: execute the plan, re-read the result, then run
   synchronous before_* webhooks (a veto rolls everything back)
8. After commit: after_* webhooks, workflow triggers and deferred
   actions are handed to the effect sink; failures there are logged
   and never undo the write
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from entityforge.auth.permissions import PermissionEvaluator
from entityforge.auth.types import UserContext
from entityforge.effects.outbox import EffectSink, LoggingSink
from entityforge.effects.types import (
    DeferredAction,
    WebhookRequest,
    WorkflowTrigger,
    compute_changes,
    resolve_headers,
)
from entityforge.engine.executor import WriteExecutor
from entityforge.engine.planner import WritePlanner, split_payload
from entityforge.engine.reader import ReadService
from entityforge.engine.records import strip_read_only, validate_values
from entityforge.errors import (
    ErrorDetail,
    conflict,
    internal,
    invalid_payload,
    not_found,
    validation_failed,
)
from entityforge.expressions import Environment, ExpressionError, should_fire
from entityforge.metadata.registry import Registry, RegistryHolder
from entityforge.metadata.types import EntityDefinition, WebhookDefinition
from entityforge.persistence.store import Store
from entityforge.rules.engine import RuleEngine
from entityforge.statemachine.engine import StateMachineEngine, TransitionEvent

logger = logging.getLogger(__name__)

WRITE_ACTIONS = ("create", "update", "delete")
WEBHOOK_VETO = "WEBHOOK_VETO"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WritePipeline:
    """Runs create, update and delete requests end to end."""

    def __init__(
        self,
        registry: Registry | RegistryHolder,
        store: Store,
        effects: EffectSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.holder = registry if isinstance(registry, RegistryHolder) else RegistryHolder(registry)
        self.store = store
        self.effects = effects if effects is not None else LoggingSink()
        self.clock = clock

    async def create(self, entity: str, payload: dict[str, Any], user: UserContext | None = None) -> dict[str, Any]:
        return await self.handle(entity, "create", payload=payload, user=user)

    async def update(
        self,
        entity: str,
        record_id: Any,
        payload: dict[str, Any],
        user: UserContext | None = None,
    ) -> dict[str, Any]:
        return await self.handle(entity, "update", payload=payload, record_id=record_id, user=user)

    async def delete(self, entity: str, record_id: Any, user: UserContext | None = None) -> dict[str, Any]:
        return await self.handle(entity, "delete", record_id=record_id, user=user)

    async def handle(
        self,
        entity: str,
        action: str,
        payload: Any = None,
        record_id: Any = None,
        user: UserContext | None = None,
    ) -> dict[str, Any]:
        """Run one write request.

        Returns:
            The stored record (with the relations written, for create and
            update; the deleted record for delete)

        Raises:
            EngineError: See ErrorCode for the taxonomy
        """
        if action not in WRITE_ACTIONS:
            raise invalid_payload(f"unknown action '{action}'")

        registry = self.holder.current
        entity_def = registry.entity(entity)
        now = self.clock()
        permissions = PermissionEvaluator(registry)
        reader = ReadService(registry, self.store)

        permissions.require(user, entity, action)

        key = None
        old = None
        if action != "create":
            if record_id is None:
                raise invalid_payload(f"{action} requires a record id")
            key = reader.parse_key(entity_def, record_id)
            with self.store.connect() as conn:
                old = self.store.fetch(conn, entity_def, key)
            if old is None:
                raise not_found(entity, record_id)
            permissions.require(user, entity, action, old)

        if action == "delete":
            return await self._delete(registry, reader, entity_def, key, old, user, now)

        if payload is None:
            payload = {}
        values, writes = split_payload(registry, entity_def, payload)
        values = strip_read_only(entity_def, values, action)
        shape_errors = validate_values(entity_def, values, partial=True)
        if shape_errors:
            raise validation_failed(shape_errors)

        candidate = dict(values) if action == "create" else {**old, **values}

        machines = StateMachineEngine().apply_all(
            registry.state_machines_for(entity), action, candidate, old, user, now
        )
        candidate = machines.record

        rules = RuleEngine(registry, loader=reader)
        outcome = await rules.run_hooks(
            "before_write",
            entity,
            action,
            candidate,
            old=old,
            payload=candidate if action == "create" else values,
            user=user,
            now=now,
        )
        if not outcome.ok:
            raise validation_failed(outcome.errors)
        candidate = outcome.record

        if action == "create":
            row = {k: v for k, v in candidate.items() if entity_def.has_field(k)}
        else:
            row = {
                k: v for k, v in candidate.items()
                if entity_def.has_field(k) and (k in values or old.get(k) != v)
            }
            row = strip_read_only(entity_def, row, action)

        plan = WritePlanner(registry).plan(entity, action, row, writes, key=key, now=now)
        executor = WriteExecutor(registry, self.store, now.isoformat())

        with self._transaction(entity, action) as conn:
            key = executor.execute(plan, conn)
            stored = reader.load_tree(conn, entity_def, key, plan.include_tree())
            await self._before_webhooks(registry, "before_write", entity, action, stored, old, user)

        await self._after_commit(
            registry, "after_write", entity, action, stored, old, user,
            machines.events, machines.actions, key,
        )
        return stored

    async def _delete(
        self,
        registry: Registry,
        reader: ReadService,
        entity_def: EntityDefinition,
        key: Any,
        old: dict[str, Any],
        user: UserContext | None,
        now: datetime,
    ) -> dict[str, Any]:
        entity = entity_def.name
        outcome = await RuleEngine(registry, loader=reader).run_hooks(
            "before_delete", entity, "delete", old, old=old, payload={}, user=user, now=now
        )
        if not outcome.ok:
            raise validation_failed(outcome.errors)

        plan = WritePlanner(registry).plan_delete(entity, key)
        executor = WriteExecutor(registry, self.store, now.isoformat())

        with self._transaction(entity, "delete") as conn:
            executor.execute(plan, conn)
            await self._before_webhooks(registry, "before_delete", entity, "delete", old, None, user)

        await self._after_commit(registry, "after_delete", entity, "delete", old, None, user, [], [], key)
        return old

    @contextmanager
    def _transaction(self, entity: str, action: str) -> Iterator[Connection]:
        """Store transaction with driver errors mapped to EngineErrors."""
        try:
            with self.store.transaction() as conn:
                yield conn
        except IntegrityError as e:
            logger.info("Constraint violation on %s %s: %s", action, entity, e.orig)
            raise conflict(f"{action} {entity} violates a constraint: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.exception("Store failure on %s %s", action, entity)
            raise internal(f"store failure during {action} {entity}") from e

    # ------------------------------------------------------------------
    # Webhooks and post-commit effects
    # ------------------------------------------------------------------

    def _fires(
        self,
        hook: WebhookDefinition,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None,
        user: UserContext | None,
    ) -> bool:
        env = Environment(record=record, old=old, user=user.to_dict() if user else None, action=action)
        try:
            return should_fire(hook.condition, env)
        except ExpressionError as e:
            logger.error("Webhook '%s' condition failed, not firing: %s", hook.id, e)
            return False

    def _request(
        self,
        hook: WebhookDefinition,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None,
        user: UserContext | None,
    ) -> WebhookRequest:
        return WebhookRequest(
            webhook_id=hook.id,
            url=hook.url,
            method=hook.method,
            headers=resolve_headers(hook.headers),
            event=hook.hook,
            entity=hook.entity,
            action=action,
            record=record,
            old=old,
            changes=compute_changes(record, old),
            user=user.to_dict() if user else None,
        )

    async def _before_webhooks(
        self,
        registry: Registry,
        hook_name: str,
        entity: str,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None,
        user: UserContext | None,
    ) -> None:
        """Synchronous webhooks inside the open transaction; a failure vetoes."""
        for hook in registry.webhooks_for(entity, hook_name):
            if not self._fires(hook, action, record, old, user):
                continue
            result = await self.effects.dispatch_sync(self._request(hook, action, record, old, user))
            if not result.ok:
                reason = result.error or f"status {result.status}"
                logger.info("Webhook '%s' vetoed %s %s: %s", hook.id, action, entity, reason)
                raise validation_failed(
                    [ErrorDetail(field=None, rule=WEBHOOK_VETO, message=f"webhook {hook.id} rejected the write: {reason}")],
                    f"webhook {hook.id} rejected the write",
                )

    async def _after_commit(
        self,
        registry: Registry,
        hook_name: str,
        entity: str,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None,
        user: UserContext | None,
        events: list[TransitionEvent],
        actions: list[DeferredAction],
        key: Any,
    ) -> None:
        for hook in registry.webhooks_for(entity, hook_name):
            if not self._fires(hook, action, record, old, user):
                continue
            try:
                await self.effects.enqueue_webhook(self._request(hook, action, record, old, user))
            except Exception as e:
                logger.error("Failed to enqueue webhook '%s' for %s %s: %s", hook.id, entity, key, e)

        for event in events:
            trigger = WorkflowTrigger(event.entity, event.field, event.from_state, event.to_state, record)
            try:
                await self.effects.emit_workflow_trigger(trigger)
            except Exception as e:
                logger.error("Failed to emit workflow trigger for %s %s: %s", entity, key, e)

        for deferred in actions:
            deferred.record_id = key
            deferred.record = record
            try:
                await self.effects.submit_action(deferred)
            except Exception as e:
                logger.error("Failed to submit %s action for %s %s: %s", deferred.type, entity, key, e)

    def swap_registry(self, registry: Registry) -> Registry:
        return self.holder.swap(registry)

