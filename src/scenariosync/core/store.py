"""Entity stores that merged scenario state is written back to."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from scenariosync.core.models import EntityType, validate_scenario_id

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from scenariosync.core.exporter import EntityExporter


Entities = dict[EntityType, list[dict[str, Any]]]


class EntityStore(Protocol):
    """Relational side of the synchronisation: reads and atomically replaces scenario data."""

    def read_entities(self, scenario_id: str) -> Entities:
        """Return the records of every entity type stored for ``scenario_id``."""
        ...

    def replace_entities(
        self,
        scenario_id: str,
        entities: Mapping[EntityType, Sequence[Mapping[str, Any]]],
    ) -> None:
        """Replace all records of ``scenario_id`` in one step; nothing changes on failure."""
        ...


def _copy_entities(entities: Mapping[EntityType, Sequence[Mapping[str, Any]]]) -> Entities:
    return {EntityType(entity_type): [dict(record) for record in records] for entity_type, records in entities.items()}


class InMemoryEntityStore:
    """Dictionary backed store used by tests and embedding applications."""

    def __init__(self, initial: Mapping[str, Mapping[EntityType, Sequence[Mapping[str, Any]]]] | None = None) -> None:
        """Seed the store with ``initial`` scenarios."""
        self._lock = threading.Lock()
        self._scenarios: dict[str, Entities] = {
            scenario_id: _copy_entities(entities) for scenario_id, entities in (initial or {}).items()
        }

    def read_entities(self, scenario_id: str) -> Entities:
        """Return a copy of the records stored for ``scenario_id``."""
        with self._lock:
            return _copy_entities(self._scenarios.get(scenario_id, {}))

    def replace_entities(
        self,
        scenario_id: str,
        entities: Mapping[EntityType, Sequence[Mapping[str, Any]]],
    ) -> None:
        """Swap in a fully built copy of ``entities``."""
        replacement = _copy_entities(entities)
        with self._lock:
            self._scenarios[scenario_id] = replacement


class DirectoryEntityStore:
    """Store scenarios as bundle files under ``<root>/<scenario_id>/``.

    Replacement writes every bundle into a staging directory next to the
    scenario directory and then swaps the directories, so readers see either
    the old or the new set of files.
    """

    def __init__(self, root: Path, exporter: EntityExporter) -> None:
        """Bind the store to ``root`` using ``exporter`` for the file format."""
        self._root = Path(root)
        self._exporter = exporter

    @property
    def root(self) -> Path:
        """Return the directory holding one sub-directory per scenario."""
        return self._root

    def scenario_dir(self, scenario_id: str) -> Path:
        """Return the directory of ``scenario_id``."""
        return self._root / validate_scenario_id(scenario_id)

    def read_entities(self, scenario_id: str) -> Entities:
        """Load and validate every bundle file of ``scenario_id``."""
        directory = self.scenario_dir(scenario_id)
        entities: Entities = {}
        for entity_type in EntityType:
            path = directory / self._exporter.registry.file_name(entity_type)
            if not path.is_file():
                continue
            bundle = self._exporter.from_json(path.read_text(encoding="utf-8"))
            entities[entity_type] = self._exporter.import_records(entity_type, bundle)
        return entities

    def replace_entities(
        self,
        scenario_id: str,
        entities: Mapping[EntityType, Sequence[Mapping[str, Any]]],
    ) -> None:
        """Write ``entities`` as bundle files and swap them in."""
        target = self.scenario_dir(scenario_id)
        staging = target.with_name(f".{target.name}.staging")
        retired = target.with_name(f".{target.name}.retired")
        for leftover in (staging, retired):
            if leftover.exists():
                shutil.rmtree(leftover)
        bundles = self._exporter.export_snapshot(scenario_id, entities)
        try:
            staging.mkdir(parents=True)
            for entity_type, bundle in bundles.items():
                path = staging / self._exporter.registry.file_name(entity_type)
                path.write_text(self._exporter.to_json(bundle), encoding="utf-8")
            if target.exists():
                target.rename(retired)
            staging.rename(target)
        except OSError:
            if retired.exists() and not target.exists():
                retired.rename(target)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        shutil.rmtree(retired, ignore_errors=True)


__all__ = ["DirectoryEntityStore", "EntityStore", "InMemoryEntityStore"]
