"""Corruption and compatibility checks run on every snapshot before diffing.

The checks run in a fixed order: JSON well-formedness, then bundle envelope
and schema version (both fatal), then per-record validation, then referential
integrity inside the snapshot (both collected into a report).
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from scenariosync.core.errors import CorruptionError, ReferentialIntegrityError, ValidationError
from scenariosync.core.models import (
    EntityType,
    FieldError,
    IntegrityPolicy,
    ScenarioExport,
    Snapshot,
)
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry

if TYPE_CHECKING:
    from collections.abc import Mapping

    from scenariosync.io.logging import StructuredLogger


_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_MAX_RECOVERY_CUTS = 256


class RecordIssue(BaseModel):
    """A record that failed validation (or repeats an id) inside a bundle."""

    entity_type: EntityType
    entity_id: str | None
    index: int
    errors: tuple[FieldError, ...]

    model_config = ConfigDict(frozen=True, extra="forbid")


class ReferenceViolation(BaseModel):
    """A foreign key pointing at an entity the snapshot does not contain."""

    entity_type: EntityType
    entity_id: str
    field: str
    target_type: EntityType
    missing_id: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class SnapshotReport(BaseModel):
    """Result of checking one snapshot."""

    snapshot: Snapshot
    invalid_records: tuple[RecordIssue, ...] = ()
    dangling_references: tuple[ReferenceViolation, ...] = ()
    recovered_files: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def ok(self) -> bool:
        """Return True when no record issue or dangling reference was found."""
        return not self.invalid_records and not self.dangling_references


def _closers(text: str) -> str | None:
    """Return the brackets needed to close ``text`` or None if it ends inside a string."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack:
                return None
            stack.pop()
    if in_string:
        return None
    return "".join(reversed(stack))


def recover_json(text: str) -> Any:
    """Best-effort repair of a truncated or sloppy JSON document.

    Trailing commas are dropped first; if the document is still unreadable it
    is cut back to the last complete object or array and the open brackets
    are closed. Raises :class:`json.JSONDecodeError` when nothing parses.
    """
    cleaned = _TRAILING_COMMA.sub(r"\1", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as first_error:
        error = first_error
    cuts = [index for index, char in enumerate(cleaned) if char in "}]"]
    for index in reversed(cuts[-_MAX_RECOVERY_CUTS:]):
        candidate = cleaned[: index + 1]
        closers = _closers(candidate)
        if closers is None:
            continue
        try:
            return json.loads(_TRAILING_COMMA.sub(r"\1", candidate + closers))
        except json.JSONDecodeError:
            continue
    raise error


class CorruptionGuard:
    """Decide whether a snapshot can be trusted before it reaches the diff engine."""

    def __init__(
        self,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        *,
        allow_recovery: bool = False,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a guard; JSON recovery stays off unless ``allow_recovery`` is set."""
        self._registry = registry
        self._allow_recovery = allow_recovery
        self._logger = logger

    @property
    def registry(self) -> SchemaRegistry:
        """Return the registry records are validated against."""
        return self._registry

    def parse_document(
        self,
        snapshot: str,
        entity_type: EntityType,
        content: str | bytes,
        *,
        scenario_id: str | None = None,
    ) -> tuple[ScenarioExport, bool]:
        """Parse one bundle document, returning the bundle and whether it was repaired.

        Raises:
            CorruptionError: if the document is not JSON, has no compatible
                ``schemaVersion`` or does not have the bundle shape.

        """
        path = self._registry.file_name(entity_type)
        try:
            text = content.decode("utf-8") if isinstance(content, bytes) else content
        except UnicodeDecodeError as exc:
            raise CorruptionError(snapshot, f"not UTF-8 encoded: {exc}", path=path) from exc

        recovered = False
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            if not self._allow_recovery:
                raise CorruptionError(snapshot, f"malformed JSON: {exc}", path=path) from exc
            try:
                document = recover_json(text)
            except json.JSONDecodeError as recovery_error:
                raise CorruptionError(
                    snapshot, f"malformed JSON: {recovery_error}", path=path,
                ) from recovery_error
            recovered = True
            if self._logger is not None:
                self._logger.warning("recovered malformed JSON", snapshot=snapshot, path=path)

        if not isinstance(document, dict):
            raise CorruptionError(snapshot, "bundle must be a JSON object", path=path)
        version = document.get("schemaVersion")
        if version is None:
            raise CorruptionError(snapshot, "missing schemaVersion", path=path)
        if not self._registry.is_compatible_version(version):
            raise CorruptionError(snapshot, f"unsupported schemaVersion {version!r}", path=path)
        envelope = self._registry.validate_envelope(document)
        if not envelope.success:
            raise CorruptionError(snapshot, f"invalid bundle: {envelope.error}", path=path)
        bundle = ScenarioExport.model_validate(document)
        if scenario_id is not None and bundle.scenario_id != scenario_id:
            reason = f"bundle belongs to scenario {bundle.scenario_id!r}, expected {scenario_id!r}"
            raise CorruptionError(snapshot, reason, path=path)
        return bundle, recovered

    def load_snapshot(
        self,
        name: str,
        documents: Mapping[EntityType, str | bytes | None],
        *,
        scenario_id: str | None = None,
    ) -> SnapshotReport:
        """Run every check on the bundle documents of one snapshot.

        ``None`` documents mean the file does not exist in that snapshot; the
        entity type is then absent rather than empty.
        """
        entities: dict[EntityType, list[dict[str, Any]]] = {}
        recovered: list[str] = []
        for entity_type in self._registry.entity_types:
            content = documents.get(entity_type)
            if content is None:
                continue
            bundle, repaired = self.parse_document(name, entity_type, content, scenario_id=scenario_id)
            entities[entity_type] = [dict(record) for record in bundle.data]
            if repaired:
                recovered.append(self._registry.file_name(entity_type))
        report = self.check_snapshot(Snapshot(name=name, entities=entities))
        return report.model_copy(update={"recovered_files": tuple(recovered)})

    def check_snapshot(self, snapshot: Snapshot) -> SnapshotReport:
        """Validate every record and every reference of an in-memory snapshot."""
        issues: list[RecordIssue] = []
        valid: dict[EntityType, list[dict[str, Any]]] = {}
        for entity_type in self._registry.entity_types:
            if not snapshot.has(entity_type):
                continue
            seen: set[str] = set()
            valid[entity_type] = []
            for index, record in enumerate(snapshot.entities[entity_type]):
                entity_id = record.get("id") if isinstance(record, dict) else None
                entity_id = entity_id if isinstance(entity_id, str) else None
                result = self._registry.validate(entity_type, record)
                errors = list(result.errors)
                if entity_id is not None and entity_id in seen:
                    errors.append(FieldError(path="id", message=f"duplicate id {entity_id}"))
                if entity_id is not None:
                    seen.add(entity_id)
                if errors:
                    issues.append(
                        RecordIssue(
                            entity_type=entity_type,
                            entity_id=entity_id,
                            index=index,
                            errors=tuple(errors),
                        ),
                    )
                    continue
                valid[entity_type].append(record)

        violations = self._dangling_references(valid)
        if (issues or violations) and self._logger is not None:
            self._logger.warning(
                "snapshot integrity issues",
                snapshot=snapshot.name,
                invalid_records=len(issues),
                dangling_references=len(violations),
            )
        return SnapshotReport(
            snapshot=snapshot,
            invalid_records=tuple(issues),
            dangling_references=tuple(violations),
        )

    def enforce(self, report: SnapshotReport, policy: IntegrityPolicy) -> Snapshot:
        """Apply ``policy`` to a report and return the snapshot to merge.

        ``abort`` raises on the first problem. ``exclude`` drops offending
        records, repeating until dropping a record leaves no new dangling
        reference behind.
        """
        if report.ok:
            return report.snapshot
        if policy is IntegrityPolicy.abort:
            if report.invalid_records:
                issue = report.invalid_records[0]
                raise ValidationError(issue.entity_type, issue.entity_id, issue.errors, index=issue.index)
            raise ReferentialIntegrityError(report.snapshot.name, report.dangling_references)

        current = report
        while not current.ok:
            excluded: dict[EntityType, set[int]] = {}
            for issue in current.invalid_records:
                excluded.setdefault(issue.entity_type, set()).add(issue.index)
            dangling = {(violation.entity_type, violation.entity_id) for violation in current.dangling_references}
            entities: dict[EntityType, list[dict[str, Any]]] = {}
            for entity_type, records in current.snapshot.entities.items():
                skip = excluded.get(entity_type, set())
                entities[entity_type] = [
                    record
                    for index, record in enumerate(records)
                    if index not in skip and (entity_type, record.get("id")) not in dangling
                ]
            if self._logger is not None:
                self._logger.warning(
                    "excluded records from snapshot",
                    snapshot=current.snapshot.name,
                    invalid_records=len(current.invalid_records),
                    dangling_references=len(current.dangling_references),
                )
            current = self.check_snapshot(Snapshot(name=current.snapshot.name, entities=entities))
        return current.snapshot

    def _dangling_references(
        self,
        valid: Mapping[EntityType, list[dict[str, Any]]],
    ) -> list[ReferenceViolation]:
        known = {entity_type: {str(record["id"]) for record in records} for entity_type, records in valid.items()}
        violations: list[ReferenceViolation] = []
        for entity_type, records in valid.items():
            references = self._registry.foreign_keys(entity_type)
            for record in records:
                for field, target_type in references.items():
                    value = record.get(field)
                    # references into an entity type absent from the snapshot cannot be checked
                    if value is None or target_type not in known:
                        continue
                    if value not in known[target_type]:
                        violations.append(
                            ReferenceViolation(
                                entity_type=entity_type,
                                entity_id=str(record["id"]),
                                field=field,
                                target_type=target_type,
                                missing_id=str(value),
                            ),
                        )
        return violations


__all__ = [
    "CorruptionGuard",
    "RecordIssue",
    "ReferenceViolation",
    "SnapshotReport",
    "recover_json",
]
