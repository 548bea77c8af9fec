"""
Flow catalog.

Holds the immutable flow definitions available to a process, keyed by
``(flow_id, version)``. A catalog instance is built at startup and passed
explicitly to whatever needs definitions.
"""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Self

from pydantic import ValidationError as PydanticValidationError

from ...exceptions.domain import FlowDefinitionError, FlowDefinitionNotFoundError
from ...models.flow import FlowDefinition
from ...utils.logger import logger


class FlowCatalog:
    """Versioned, read-only collection of flow definitions."""

    def __init__(self, definitions: Iterable[FlowDefinition] = ()):
        self._definitions: dict[tuple[str, int], FlowDefinition] = {}
        for definition in definitions:
            self.add(definition)

    def add(self, definition: FlowDefinition) -> None:
        """Register a definition.

        Raises:
            FlowDefinitionError: If the same id and version is already registered
                with different content
        """
        existing = self._definitions.get(definition.key)
        if existing is not None and existing != definition:
            raise FlowDefinitionError(
                f"Flow '{definition.id}' version {definition.version} is already registered"
            )
        self._definitions[definition.key] = definition

    def get(self, flow_id: str, version: int | None = None) -> FlowDefinition:
        """Get a definition, the latest version when ``version`` is None.

        Raises:
            FlowDefinitionNotFoundError: If no matching definition exists
        """
        if version is not None:
            definition = self._definitions.get((flow_id, version))
            if definition is None:
                raise FlowDefinitionNotFoundError(flow_id, version)
            return definition

        versions = [key[1] for key in self._definitions if key[0] == flow_id]
        if not versions:
            raise FlowDefinitionNotFoundError(flow_id)
        return self._definitions[(flow_id, max(versions))]

    def definitions(self) -> list[FlowDefinition]:
        return [self._definitions[key] for key in sorted(self._definitions)]

    def __contains__(self, key: tuple[str, int]) -> bool:
        return key in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    @staticmethod
    def parse_file(path: Path) -> FlowDefinition:
        """Parse one JSON flow definition file.

        Raises:
            FlowDefinitionError: If the file is not a valid definition
        """
        try:
            return FlowDefinition.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise FlowDefinitionError(f"Invalid flow definition {path.name}: {e}") from e

    @classmethod
    def from_directory(cls, directory: Path) -> Self:
        """Load every ``*.json`` file in ``directory``.

        A missing directory gives an empty catalog.
        """
        catalog = cls()
        if not directory.is_dir():
            logger.warning(f"Flow directory {directory} does not exist, catalog is empty")
            return catalog

        for path in sorted(directory.glob("*.json")):
            definition = cls.parse_file(path)
            catalog.add(definition)
            logger.info(f"Loaded flow '{definition.id}' v{definition.version} from {path.name}")
        return catalog
