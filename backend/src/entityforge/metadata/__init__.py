"""Metadata definitions, YAML loading and the registry snapshot."""

from entityforge.metadata.loader import MetadataLoader, load_registry
from entityforge.metadata.registry import Registry, RegistryHolder
from entityforge.metadata.types import (
    EntityDefinition,
    FieldDefinition,
    MetadataError,
    PermissionPolicy,
    PrimaryKey,
    RelatedLoad,
    RelationDefinition,
    Rule,
    RuleDefinition,
    StateMachineDefinition,
    Transition,
    TransitionAction,
    WebhookDefinition,
)

__all__ = [
    "EntityDefinition",
    "FieldDefinition",
    "MetadataError",
    "MetadataLoader",
    "PermissionPolicy",
    "PrimaryKey",
    "RelatedLoad",
    "RelationDefinition",
    "Registry",
    "RegistryHolder",
    "Rule",
    "RuleDefinition",
    "StateMachineDefinition",
    "Transition",
    "TransitionAction",
    "WebhookDefinition",
    "load_registry",
]
