"""Schema registry: one place that knows how every entity type validates."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from scenariosync.core.entities import DATE_RANGES, ENTITY_SCHEMAS
from scenariosync.core.models import EntityType, FieldError, ScenarioExport, ValidationResult

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pydantic_core import ErrorDetails


SCHEMA_VERSION = "1.0.0"
SUPPORTED_SCHEMA_VERSIONS = frozenset({SCHEMA_VERSION})

FILE_NAMES: dict[EntityType, str] = {
    EntityType.project: "projects.json",
    EntityType.person: "people.json",
    EntityType.assignment: "assignments.json",
    EntityType.project_phase: "project_phases.json",
    EntityType.role: "roles.json",
    EntityType.location: "locations.json",
    EntityType.project_type: "project_types.json",
}

FOREIGN_KEYS: dict[EntityType, dict[str, EntityType]] = {
    EntityType.project: {
        "projectTypeId": EntityType.project_type,
        "locationId": EntityType.location,
    },
    EntityType.person: {
        "primaryRoleId": EntityType.role,
        "locationId": EntityType.location,
        "supervisorId": EntityType.person,
    },
    EntityType.assignment: {
        "projectId": EntityType.project,
        "personId": EntityType.person,
        "roleId": EntityType.role,
        "phaseId": EntityType.project_phase,
    },
    EntityType.project_phase: {"projectId": EntityType.project},
    EntityType.role: {},
    EntityType.location: {},
    EntityType.project_type: {"parentId": EntityType.project_type},
}


def _format_location(location: tuple[int | str, ...]) -> str:
    path = ""
    for part in location:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _field_errors(details: list[ErrorDetails], *, prefix: str = "") -> list[FieldError]:
    errors: list[FieldError] = []
    for detail in details:
        path = _format_location(tuple(detail["loc"]))
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        errors.append(FieldError(path=path, message=detail["msg"]))
    return errors


class SchemaRegistry:
    """Validate raw records and bundle envelopes for the closed set of entity types."""

    def __init__(self, *, supported_versions: frozenset[str] = SUPPORTED_SCHEMA_VERSIONS) -> None:
        """Create a registry accepting bundles stamped with ``supported_versions``."""
        self._supported_versions = supported_versions

    @property
    def entity_types(self) -> tuple[EntityType, ...]:
        """Return the registered entity types in declaration order."""
        return tuple(EntityType)

    def validate(self, entity_type: EntityType, raw: Any) -> ValidationResult:
        """Validate ``raw`` against the schema of ``entity_type``.

        Every violated constraint is reported with its field path; nothing is
        raised for bad data. On success ``data`` is a copy of the record.
        """
        if not isinstance(raw, dict):
            return ValidationResult(
                success=False,
                errors=(FieldError(path="", message="record must be a JSON object"),),
            )
        schema = ENTITY_SCHEMAS[entity_type]
        errors: list[FieldError] = []
        try:
            schema.model_validate(raw)
        except PydanticValidationError as exc:
            errors.extend(_field_errors(exc.errors()))
        errors.extend(self._date_range_errors(entity_type, raw))
        if errors:
            return ValidationResult(success=False, errors=tuple(errors))
        return ValidationResult(success=True, data=dict(raw))

    def validate_field(
        self,
        entity_type: EntityType,
        field: str,
        value: Any,
        record: Mapping[str, Any],
    ) -> ValidationResult:
        """Validate ``record`` with ``field`` replaced by ``value``.

        Used for custom resolution values so cross-field rules (such as date
        ordering) are checked against the rest of the entity.
        """
        candidate = dict(record)
        candidate[field] = value
        return self.validate(entity_type, candidate)

    def validate_envelope(self, document: Any) -> ValidationResult:
        """Validate the bundle wrapper without looking at individual records."""
        if not isinstance(document, dict):
            return ValidationResult(
                success=False,
                errors=(FieldError(path="", message="bundle must be a JSON object"),),
            )
        try:
            bundle = ScenarioExport.model_validate(document)
        except PydanticValidationError as exc:
            return ValidationResult(success=False, errors=tuple(_field_errors(exc.errors())))
        return ValidationResult(success=True, data=bundle.to_document())

    def is_compatible_version(self, version: Any) -> bool:
        """Return True when a bundle stamped with ``version`` can be read.

        Only exactly supported versions are accepted: a bundle written by a
        newer release may carry fields this registry cannot interpret.
        """
        return isinstance(version, str) and version in self._supported_versions

    def foreign_keys(self, entity_type: EntityType) -> dict[str, EntityType]:
        """Return the reference fields of ``entity_type`` and their targets."""
        return dict(FOREIGN_KEYS[entity_type])

    def file_name(self, entity_type: EntityType) -> str:
        """Return the bundle file name used for ``entity_type``."""
        return FILE_NAMES[entity_type]

    def entity_type_for_file(self, file_name: str) -> EntityType | None:
        """Return the entity type stored in ``file_name`` if it is a known bundle."""
        for entity_type, name in FILE_NAMES.items():
            if name == file_name:
                return entity_type
        return None

    def display_name(self, entity_type: EntityType, record: Mapping[str, Any] | None) -> str:
        """Return a label for ``record`` suitable for conflict listings."""
        if not record:
            return ""
        name = record.get("name")
        if isinstance(name, str) and name:
            return name
        if entity_type is EntityType.assignment:
            return f"{record.get('personId', '?')} on {record.get('projectId', '?')}"
        return str(record.get("id", ""))

    def _date_range_errors(self, entity_type: EntityType, raw: Mapping[str, Any]) -> list[FieldError]:
        fields = DATE_RANGES.get(entity_type)
        if fields is None:
            return []
        start_field, end_field = fields
        start, end = raw.get(start_field), raw.get(end_field)
        # ISO dates order lexicographically; malformed values are reported by the schema.
        if isinstance(start, str) and isinstance(end, str) and _is_iso_date(start) and _is_iso_date(end):
            if end < start:
                return [FieldError(path=end_field, message=f"must not be before {start_field}")]
        return []


def _is_iso_date(value: str) -> bool:
    return len(value) == 10 and value[4] == "-" and value[7] == "-"


DEFAULT_REGISTRY = SchemaRegistry()


__all__ = [
    "DEFAULT_REGISTRY",
    "FILE_NAMES",
    "FOREIGN_KEYS",
    "SCHEMA_VERSION",
    "SUPPORTED_SCHEMA_VERSIONS",
    "SchemaRegistry",
]
