"""Load metadata definitions from a directory of YAML files.

Layout::

    metadata/
      entities/*.yaml        one entity per file, or a list
      relations/*.yaml
      rules/*.yaml
      state_machines/*.yaml
      permissions/*.yaml
      webhooks/*.yaml

Each file holds a single mapping or a list of mappings.
"""

import logging
from pathlib import Path
from typing import Any, Callable

import yaml

from entityforge.metadata.registry import Registry
from entityforge.metadata.types import (
    EntityDefinition,
    MetadataError,
    PermissionPolicy,
    RelationDefinition,
    Rule,
    StateMachineDefinition,
    WebhookDefinition,
)

logger = logging.getLogger(__name__)

SUBDIRECTORIES = (
    "entities",
    "relations",
    "rules",
    "state_machines",
    "permissions",
    "webhooks",
)


class MetadataLoader:
    """Reads a metadata directory into a Registry snapshot."""

    def __init__(self, metadata_path: Path):
        self.metadata_path = Path(metadata_path)

    def load(self) -> Registry:
        """Load every subdirectory and build a cross-checked Registry.

        Raises:
            MetadataError: If a file is malformed or definitions are inconsistent
        """
        if not self.metadata_path.is_dir():
            raise MetadataError(f"metadata directory not found: {self.metadata_path}")

        rules: list[Rule] = []
        for order, data in enumerate(self._documents("rules")):
            rules.append(Rule.from_dict(data, order=order))

        return Registry.build(
            entities=self._load("entities", EntityDefinition.from_dict),
            relations=self._load("relations", RelationDefinition.from_dict),
            rules=rules,
            state_machines=self._load("state_machines", StateMachineDefinition.from_dict),
            policies=self._load("permissions", PermissionPolicy.from_dict),
            webhooks=self._load("webhooks", WebhookDefinition.from_dict),
        )

    def _load(self, subdir: str, factory: Callable[[dict[str, Any]], Any]) -> list[Any]:
        return [factory(data) for data in self._documents(subdir)]

    def _documents(self, subdir: str) -> list[dict[str, Any]]:
        directory = self.metadata_path / subdir
        if not directory.exists():
            return []

        documents: list[dict[str, Any]] = []
        for yaml_file in sorted(directory.glob("*.yaml")):
            with open(yaml_file) as f:
                try:
                    content = yaml.safe_load(f)
                except yaml.YAMLError as e:
                    raise MetadataError(f"{yaml_file}: invalid YAML: {e}") from e

            if content is None:
                logger.debug("Skipping empty metadata file %s", yaml_file)
                continue
            items = content if isinstance(content, list) else [content]
            for item in items:
                if not isinstance(item, dict):
                    raise MetadataError(f"{yaml_file}: expected a mapping, got {type(item).__name__}")
                documents.append(item)

        return documents


def load_registry(metadata_path: Path) -> Registry:
    """Convenience wrapper around MetadataLoader.load."""
    return MetadataLoader(metadata_path).load()
