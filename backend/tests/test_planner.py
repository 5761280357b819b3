"""Tests for payload splitting and nested write planning."""

import pytest

from entityforge.engine import MAX_NESTING_DEPTH, OpKind, WritePlanner, split_payload
from entityforge.errors import EngineError, ErrorCode
from entityforge.metadata import EntityDefinition, Registry, RelationDefinition

from conftest import FROZEN_NOW

INVOICE_ID = "4f9c2a0e-8d3b-4a55-9d0e-1b2c3d4e5f60"


@pytest.fixture
def planner(registry):
    return WritePlanner(registry)


def plan_create(registry, planner, payload, entity="invoice"):
    values, writes = split_payload(registry, registry.entity(entity), payload)
    return planner.plan(entity, "create", values, writes, now=FROZEN_NOW)


def plan_update(registry, planner, payload, key=INVOICE_ID, entity="invoice"):
    values, writes = split_payload(registry, registry.entity(entity), payload)
    return planner.plan(entity, "update", values, writes, key=key, now=FROZEN_NOW)


def chain_registry(length: int) -> Registry:
    """Entities e0 -> e1 -> ... -> e{length}, each owning the next."""
    entities = [
        EntityDefinition.from_dict({
            "name": f"e{i}",
            "fields": [{"name": "parent_id", "type": "uuid"}, {"name": "label", "type": "string"}],
        })
        for i in range(length + 1)
    ]
    relations = [
        RelationDefinition.from_dict({
            "name": "child",
            "type": "one_to_many",
            "source": f"e{i}",
            "target": f"e{i + 1}",
            "target_key": "parent_id",
        })
        for i in range(length)
    ]
    return Registry.build(entities=entities, relations=relations)


def nested_payload(levels: int) -> dict:
    payload: dict = {"label": "leaf"}
    for _ in range(levels):
        payload = {"label": "node", "child": {"data": [payload]}}
    return payload


# =============================================================================
# split_payload
# =============================================================================


class TestSplitPayload:
    def test_separates_fields_and_relations(self, registry):
        values, writes = split_payload(
            registry,
            registry.entity("invoice"),
            {"number": "INV-1", "items": {"data": []}, "tags": {"write_mode": "replace", "data": ["vip"]}},
        )

        assert values == {"number": "INV-1"}
        assert writes["items"].write_mode == "diff"
        assert writes["tags"].write_mode == "replace"
        assert writes["tags"].items == ["vip"]

    def test_relation_default_write_mode(self, registry):
        _, writes = split_payload(registry, registry.entity("invoice"), {"notes": {"data": []}})

        assert writes["notes"].write_mode == "append"

    def test_write_mode_alias(self, registry):
        _, writes = split_payload(registry, registry.entity("invoice"), {"items": {"_write_mode": "replace", "data": []}})

        assert writes["items"].write_mode == "replace"

    def test_unknown_keys(self, registry):
        with pytest.raises(EngineError) as exc_info:
            split_payload(registry, registry.entity("invoice"), {"number": "INV-1", "colour": "red", "size": 2})

        assert exc_info.value.code is ErrorCode.UNKNOWN_FIELD
        assert [d.field for d in exc_info.value.details] == ["colour", "size"]

    @pytest.mark.parametrize(
        "value",
        [
            [{"description": "x"}],
            {"items": []},
            {"data": [], "extra": 1},
            {"data": {"description": "x"}},
            {"data": [], "write_mode": "merge"},
            {"data": ["not-an-object"]},
        ],
    )
    def test_malformed_relation_value(self, registry, value):
        with pytest.raises(EngineError) as exc_info:
            split_payload(registry, registry.entity("invoice"), {"items": value})

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD

    def test_non_object_payload(self, registry):
        with pytest.raises(EngineError) as exc_info:
            split_payload(registry, registry.entity("invoice"), ["INV-1"])

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD


# =============================================================================
# Root rows
# =============================================================================


class TestRootPlanning:
    def test_create_applies_defaults_and_timestamps(self, registry, planner):
        plan = plan_create(registry, planner, {"number": "INV-1"})

        root = plan.root
        assert root.kind is OpKind.INSERT
        assert root.values["total"] == 0
        assert root.values["created_at"] == FROZEN_NOW.isoformat()
        assert root.values["updated_at"] == FROZEN_NOW.isoformat()

    def test_create_rounds_decimals(self, registry, planner):
        plan = plan_create(registry, planner, {"number": "INV-1", "total": "10.456"})

        assert plan.root.values["total"] == 10.46

    def test_create_reports_every_problem(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_create(registry, planner, {"status": "lost", "total": "lots"})

        assert exc_info.value.code is ErrorCode.VALIDATION_FAILED
        found = {(d.field, d.rule) for d in exc_info.value.details}
        assert found == {("status", "enum"), ("total", "type"), ("number", "required")}

    def test_update_is_partial(self, registry, planner):
        plan = plan_update(registry, planner, {"total": 5})

        assert plan.root.kind is OpKind.UPDATE
        assert plan.root.key == INVOICE_ID
        assert plan.root.values == {"total": 5.0, "updated_at": FROZEN_NOW.isoformat()}

    def test_empty_update_has_no_values(self, registry, planner):
        plan = plan_update(registry, planner, {})

        assert plan.root.values == {}

    def test_update_null_required_field(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_update(registry, planner, {"number": None})

        assert exc_info.value.details[0].rule == "required"

    def test_plan_delete(self, planner):
        plan = planner.plan_delete("invoice", INVOICE_ID)

        assert [n.kind for n in plan.nodes] == [OpKind.DELETE]
        assert plan.root.key == INVOICE_ID


# =============================================================================
# Nested rows
# =============================================================================


class TestNestedPlanning:
    def test_child_insert_update_delete(self, registry, planner):
        plan = plan_update(registry, planner, {
            "items": {"data": [
                {"description": "New", "quantity": 1},
                {"id": "i-2", "quantity": 4},
                {"id": "i-3", "_delete": True},
            ]},
        })

        group = plan.children_of(plan.root)[0]
        assert group.kind is OpKind.SYNC
        assert group.relation == "items"
        assert group.write_mode == "diff"
        assert [(n.kind, n.key) for n in plan.children_of(group)] == [
            (OpKind.INSERT, None),
            (OpKind.UPDATE, "i-2"),
            (OpKind.DELETE, "i-3"),
        ]

    def test_child_insert_gets_defaults_and_no_foreign_key(self, registry, planner):
        plan = plan_create(registry, planner, {
            "number": "INV-1",
            "items": {"data": [{"description": "Hours", "quantity": 3, "invoice_id": "ignored"}]},
        })

        item = plan.nodes[2]
        assert item.values == {"description": "Hours", "quantity": 3, "unit_price": 0}

    def test_child_errors_carry_paths(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_create(registry, planner, {
                "number": "INV-1",
                "items": {"data": [{"description": "ok", "quantity": 1}, {"quantity": "two"}]},
            })

        found = {(d.field, d.rule) for d in exc_info.value.details}
        assert found == {("items[1].quantity", "type"), ("items[1].description", "required")}

    def test_unknown_child_field_has_path(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_create(registry, planner, {"number": "INV-1", "items": {"data": [{"colour": "red"}]}})

        assert exc_info.value.code is ErrorCode.UNKNOWN_FIELD
        assert exc_info.value.details[0].field == "items[0].colour"

    def test_delete_without_key(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_update(registry, planner, {"items": {"data": [{"_delete": True}]}})

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD

    def test_append_mode_only_inserts(self, registry, planner):
        plan = plan_update(registry, planner, {
            "notes": {"data": [{"body": "hello"}, {"id": 4, "body": "edit"}, {"id": 5, "_delete": True}]},
        })

        group = plan.children_of(plan.root)[0]
        assert [n.kind for n in plan.children_of(group)] == [OpKind.INSERT]

    def test_many_to_many_links_by_key(self, registry, planner):
        plan = plan_update(registry, planner, {
            "tags": {"data": ["vip", {"code": "export"}, {"code": "urgent", "_delete": True}]},
        })

        group = plan.children_of(plan.root)[0]
        assert [(n.kind, n.key) for n in plan.children_of(group)] == [
            (OpKind.LINK, "vip"),
            (OpKind.LINK, "export"),
            (OpKind.UNLINK, "urgent"),
        ]

    def test_many_to_many_requires_key(self, registry, planner):
        with pytest.raises(EngineError) as exc_info:
            plan_update(registry, planner, {"tags": {"data": [{"label": "New tag"}]}})

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD

    def test_many_to_many_groups_planned_last(self, registry, planner):
        plan = plan_update(registry, planner, {
            "tags": {"data": ["vip"]},
            "items": {"data": [{"description": "x", "quantity": 1}]},
        })

        assert [g.relation for g in plan.children_of(plan.root)] == ["items", "tags"]

    def test_include_tree(self, registry, planner):
        plan = plan_update(registry, planner, {
            "items": {"data": [{"description": "x", "quantity": 1}]},
            "tags": {"data": []},
        })

        assert plan.include_tree() == {"items": {}, "tags": {}}


# =============================================================================
# Structural limits
# =============================================================================


class TestStructuralLimits:
    def test_depth_within_limit(self):
        registry = chain_registry(MAX_NESTING_DEPTH)
        planner = WritePlanner(registry)
        values, writes = split_payload(registry, registry.entity("e0"), nested_payload(MAX_NESTING_DEPTH - 1))

        plan = planner.plan("e0", "create", values, writes)

        assert plan.nodes[-1].values["label"] == "leaf"

    def test_depth_exceeded(self):
        registry = chain_registry(MAX_NESTING_DEPTH + 1)
        planner = WritePlanner(registry)
        values, writes = split_payload(registry, registry.entity("e0"), nested_payload(MAX_NESTING_DEPTH))

        with pytest.raises(EngineError) as exc_info:
            planner.plan("e0", "create", values, writes)

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD
        assert "nesting deeper" in exc_info.value.message

    def test_circular_chain(self):
        entities = [EntityDefinition.from_dict({"name": "folder", "fields": [{"name": "parent_id", "type": "uuid"}]})]
        relations = [
            RelationDefinition.from_dict({
                "name": "subfolders",
                "type": "one_to_many",
                "source": "folder",
                "target": "folder",
                "target_key": "parent_id",
            }),
        ]
        registry = Registry.build(entities=entities, relations=relations)
        values, writes = split_payload(registry, registry.entity("folder"), {"subfolders": {"data": [{}]}})

        with pytest.raises(EngineError) as exc_info:
            WritePlanner(registry).plan("folder", "create", values, writes)

        assert exc_info.value.code is ErrorCode.INVALID_PAYLOAD
        assert "circular" in exc_info.value.message
