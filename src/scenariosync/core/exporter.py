"""Serialise entity records into versioned scenario bundles and back."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from scenariosync.core.errors import CorruptionError, ValidationError
from scenariosync.core.models import EntityType, ScenarioExport, validate_scenario_id
from scenariosync.core.registry import DEFAULT_REGISTRY, SCHEMA_VERSION, SchemaRegistry

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from scenariosync.io.logging import StructuredLogger


_LABELS: dict[EntityType, tuple[str, str]] = {
    EntityType.project: ("project", "projects"),
    EntityType.person: ("person", "people"),
    EntityType.assignment: ("assignment", "assignments"),
    EntityType.project_phase: ("phase", "phases"),
    EntityType.role: ("role", "roles"),
    EntityType.location: ("location", "locations"),
    EntityType.project_type: ("project type", "project types"),
}


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class EntityExporter:
    """Build and read the JSON bundles stored in the scenario repository."""

    def __init__(
        self,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        *,
        exported_by: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an exporter stamping bundles with ``exported_by`` and ``clock()``."""
        self._registry = registry
        self._exported_by = exported_by
        self._clock = clock
        self._logger = logger

    @property
    def registry(self) -> SchemaRegistry:
        """Return the registry used to validate records."""
        return self._registry

    def export(
        self,
        scenario_id: str,
        entity_type: EntityType,
        records: Sequence[Mapping[str, Any]],
        *,
        exported_at: datetime | None = None,
    ) -> ScenarioExport:
        """Wrap ``records`` in a bundle after validating every one of them.

        The first invalid record aborts the export with :class:`ValidationError`;
        no partial bundle is produced. Record order is preserved.
        """
        validate_scenario_id(scenario_id)
        self._validate_records(entity_type, records)
        return ScenarioExport(
            schema_version=SCHEMA_VERSION,
            exported_at=exported_at or self._clock(),
            exported_by=self._exported_by,
            scenario_id=scenario_id,
            data=[dict(record) for record in records],
        )

    def export_snapshot(
        self,
        scenario_id: str,
        entities: Mapping[EntityType, Sequence[Mapping[str, Any]]],
    ) -> dict[EntityType, ScenarioExport]:
        """Export every entity type present in ``entities`` with one shared timestamp."""
        exported_at = self._clock()
        bundles: dict[EntityType, ScenarioExport] = {}
        for entity_type in self._registry.entity_types:
            if entity_type in entities:
                bundles[entity_type] = self.export(
                    scenario_id, entity_type, entities[entity_type], exported_at=exported_at,
                )
        return bundles

    def import_records(self, entity_type: EntityType, bundle: ScenarioExport) -> list[dict[str, Any]]:
        """Return the validated records of ``bundle``.

        Raises:
            CorruptionError: if the bundle was written with an incompatible schema.
            ValidationError: on the first invalid record.

        """
        if not self._registry.is_compatible_version(bundle.schema_version):
            reason = f"unsupported schemaVersion {bundle.schema_version!r}"
            raise CorruptionError("import", reason, path=self._registry.file_name(entity_type))
        self._validate_records(entity_type, bundle.data)
        return [dict(record) for record in bundle.data]

    def to_json(self, bundle: ScenarioExport) -> str:
        """Render ``bundle`` as the indented UTF-8 text stored on disk."""
        return json.dumps(bundle.to_document(), indent=2, ensure_ascii=False) + "\n"

    def from_json(self, text: str | bytes) -> ScenarioExport:
        """Parse bundle text, raising :class:`CorruptionError` when it is unusable."""
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptionError("bundle", f"malformed JSON: {exc}") from exc
        try:
            return ScenarioExport.model_validate(document)
        except PydanticValidationError as exc:
            raise CorruptionError("bundle", f"invalid bundle: {exc.error_count()} error(s)") from exc

    def scenario_paths(
        self,
        scenario_id: str,
        *,
        scenarios_dir: str = "scenarios",
    ) -> dict[EntityType, str]:
        """Return the repository-relative path of every bundle of ``scenario_id``."""
        base = PurePosixPath(scenarios_dir) / validate_scenario_id(scenario_id)
        return {
            entity_type: str(base / self._registry.file_name(entity_type))
            for entity_type in self._registry.entity_types
        }

    def write_snapshot(
        self,
        root: Path,
        scenario_id: str,
        entities: Mapping[EntityType, Sequence[Mapping[str, Any]]],
        *,
        scenarios_dir: str = "scenarios",
    ) -> list[str]:
        """Write the bundles of ``entities`` below ``root`` and return the relative paths.

        Everything is validated before the first file is touched; each file
        is replaced atomically.
        """
        bundles = self.export_snapshot(scenario_id, entities)
        return self.write_bundles(root, scenario_id, bundles, scenarios_dir=scenarios_dir)

    def write_bundles(
        self,
        root: Path,
        scenario_id: str,
        bundles: Mapping[EntityType, ScenarioExport],
        *,
        scenarios_dir: str = "scenarios",
    ) -> list[str]:
        """Write already exported ``bundles`` below ``root``; see :meth:`write_snapshot`."""
        paths = self.scenario_paths(scenario_id, scenarios_dir=scenarios_dir)
        written: list[str] = []
        for entity_type, bundle in bundles.items():
            relative = paths[entity_type]
            target = Path(root) / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            temporary = target.with_name(f".{target.name}.tmp")
            try:
                temporary.write_text(self.to_json(bundle), encoding="utf-8")
                os.replace(temporary, target)
            finally:
                temporary.unlink(missing_ok=True)
            written.append(relative)
        if self._logger is not None:
            self._logger.info("wrote scenario bundles", scenario_id=scenario_id, files=written)
        return written

    def commit_message(self, bundles: Mapping[EntityType, ScenarioExport]) -> str:
        """Summarise ``bundles`` as a commit message, e.g. ``2 projects, 1 person``."""
        parts: list[str] = []
        timestamp: datetime | None = None
        for entity_type in self._registry.entity_types:
            bundle = bundles.get(entity_type)
            if bundle is None:
                continue
            timestamp = timestamp or bundle.exported_at
            count = len(bundle.data)
            if count == 0:
                continue
            singular, plural = _LABELS[entity_type]
            parts.append(f"{count} {singular if count == 1 else plural}")
        summary = ", ".join(parts) if parts else "no data"
        stamp = (timestamp or self._clock()).isoformat()
        return f"Updated scenario data: {summary} ({stamp})"

    def _validate_records(self, entity_type: EntityType, records: Sequence[Any]) -> None:
        for index, record in enumerate(records):
            result = self._registry.validate(entity_type, record)
            if not result.success:
                entity_id = record.get("id") if isinstance(record, dict) else None
                raise ValidationError(
                    entity_type,
                    entity_id if isinstance(entity_id, str) else None,
                    result.errors,
                    index=index,
                )


__all__ = ["EntityExporter"]
