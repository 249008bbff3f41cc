"""Core data models for scenariosync."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
import re
import typing

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ENTITY_FIELD = "*"
"""Field marker used by conflicts that concern a whole entity (deletions)."""

_SCENARIO_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EntityType(str, Enum):
    """Closed set of planning entity types carried by a scenario.

    Declaration order is significant: it defines the order in which bundles
    are exported, validated and in which conflicts are reported.
    """

    project = "project"
    person = "person"
    assignment = "assignment"
    project_phase = "project_phase"
    role = "role"
    location = "location"
    project_type = "project_type"


class ResolutionStrategy(str, Enum):
    """How a single conflict is settled."""

    accept_local = "accept_local"
    accept_remote = "accept_remote"
    custom = "custom"


class ConflictKind(str, Enum):
    """Distinguishes field edits from whole-entity creation or deletion."""

    field = "field"
    creation = "creation"
    deletion = "deletion"


class ConflictStatus(str, Enum):
    """Lifecycle states of a conflict inside a merge session."""

    pending = "pending"
    resolved = "resolved"
    deferred = "deferred"


class SyncFailureKind(str, Enum):
    """Categories used to classify failed remote operations."""

    network = "network"
    timeout = "timeout"
    authentication = "authentication"
    permission = "permission"
    rejected = "rejected"
    unknown = "unknown"


class IntegrityPolicy(str, Enum):
    """What to do with invalid records or dangling references in a snapshot."""

    abort = "abort"
    exclude = "exclude"


def validate_scenario_id(value: str) -> str:
    """Return ``value`` when it is safe to use as a scenario directory name."""
    if not _SCENARIO_ID_PATTERN.fullmatch(value) or ".." in value:
        msg = f"invalid scenario id: {value!r}"
        raise ValueError(msg)
    return value


def _empty_entities() -> dict[EntityType, list[dict[str, typing.Any]]]:
    return {}


class Snapshot(BaseModel):
    """Named entity set captured at one point in history (base, local or remote)."""

    name: str
    entities: dict[EntityType, list[dict[str, typing.Any]]] = Field(default_factory=_empty_entities)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def records(self, entity_type: EntityType) -> list[dict[str, typing.Any]]:
        """Return the records stored for ``entity_type`` (empty when absent)."""
        return list(self.entities.get(entity_type, []))

    def index(self, entity_type: EntityType) -> dict[str, dict[str, typing.Any]]:
        """Return the records of ``entity_type`` keyed by their identifier."""
        return {str(record["id"]): record for record in self.entities.get(entity_type, [])}

    def has(self, entity_type: EntityType) -> bool:
        """Return True when the snapshot carries a record set for ``entity_type``."""
        return entity_type in self.entities

    def count(self) -> int:
        """Return the number of records across all entity types."""
        return sum(len(records) for records in self.entities.values())


class ScenarioExport(BaseModel):
    """On-disk bundle wrapping the records of one entity type."""

    schema_version: str = Field(alias="schemaVersion")
    exported_at: datetime = Field(alias="exportedAt")
    exported_by: str | None = Field(default=None, alias="exportedBy")
    scenario_id: str = Field(alias="scenarioId")
    data: list[dict[str, typing.Any]]

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("scenario_id")
    @classmethod
    def _check_scenario_id(cls, value: str) -> str:
        return validate_scenario_id(value)

    @field_validator("exported_by")
    @classmethod
    def _check_exported_by(cls, value: str | None) -> str | None:
        if value is not None and not _EMAIL_PATTERN.fullmatch(value):
            msg = "exportedBy must be an email address"
            raise ValueError(msg)
        return value

    def to_document(self) -> dict[str, typing.Any]:
        """Return the JSON document written to disk."""
        return self.model_dump(mode="json", by_alias=True)


class FieldError(BaseModel):
    """A single violated constraint located by its field path."""

    path: str
    message: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class ValidationResult(BaseModel):
    """Outcome of validating one raw record; never raised."""

    success: bool
    data: dict[str, typing.Any] | None = None
    errors: tuple[FieldError, ...] = ()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def error(self) -> str | None:
        """Return a readable message enumerating every violated field path."""
        if self.success:
            return None
        return "; ".join(str(item) for item in self.errors)


class Conflict(BaseModel):
    """A field (or whole entity) that diverged on both sides of a merge."""

    id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    field: str
    kind: ConflictKind = ConflictKind.field
    base_value: typing.Any = None
    local_value: typing.Any = None
    remote_value: typing.Any = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def is_entity_level(self) -> bool:
        """Return True when the conflict concerns the whole entity."""
        return self.field == ENTITY_FIELD


class Resolution(BaseModel):
    """The decision taken for one conflict."""

    conflict_id: str
    strategy: ResolutionStrategy
    custom_value: typing.Any = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _require_custom_value(self) -> Resolution:
        if self.strategy is ResolutionStrategy.custom and "custom_value" not in self.model_fields_set:
            msg = "custom resolutions require a custom_value"
            raise ValueError(msg)
        return self


class OverAllocationWarning(BaseModel):
    """A person's concurrent allocation exceeds the threshold after a resolution."""

    person_id: str
    person_name: str
    total_allocation: float
    threshold: float = 100.0
    start_date: str
    end_date: str
    assignment_ids: tuple[str, ...]

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def timeframe(self) -> str:
        """Return the overloaded window formatted for display."""
        return f"{self.start_date} to {self.end_date}"

    @property
    def message(self) -> str:
        """Return a human readable description of the warning."""
        total = f"{self.total_allocation:g}"
        return f"{self.person_name} would be allocated {total}% from {self.timeframe}"


class PhaseBoundsWarning(BaseModel):
    """A project phase falls outside its project's aspiration dates."""

    project_id: str
    phase_id: str
    phase_name: str
    reason: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class ResolvedEntity(BaseModel):
    """Entity state produced by applying one resolution."""

    entity_type: EntityType
    entity_id: str
    record: dict[str, typing.Any] | None
    warnings: tuple[OverAllocationWarning, ...] = ()
    phase_warnings: tuple[PhaseBoundsWarning, ...] = ()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def deleted(self) -> bool:
        """Return True when the resolution removes the entity."""
        return self.record is None


class ResolutionOutcome(BaseModel):
    """What a merge session reports back for a ``resolve`` call."""

    conflict_id: str
    success: bool
    applied: bool
    status: ConflictStatus
    warnings: tuple[OverAllocationWarning, ...] = ()
    phase_warnings: tuple[PhaseBoundsWarning, ...] = ()
    error: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def requires_acknowledgement(self) -> bool:
        """Return True when warnings block the resolution until acknowledged."""
        return self.success and not self.applied and bool(self.warnings)


class RepositorySettings(BaseModel):
    """Where scenarios live and which remote branch they sync with."""

    remote: str = "origin"
    branch: str = "main"
    scenarios_dir: str = "scenarios"

    model_config = ConfigDict(frozen=True, extra="forbid")


class TransportPolicy(BaseModel):
    """Timeout and bounded retry settings for remote git operations."""

    timeout_sec: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_sec: float = Field(default=0.5, ge=0)
    backoff_max_sec: float = Field(default=8.0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base_sec * (2 ** (attempt - 1)), self.backoff_max_sec)


class MergePolicy(BaseModel):
    """Knobs for the three-way merge and its guardrails."""

    allocation_threshold: float = Field(default=100.0, gt=0)
    confirm_deletions: bool = True
    integrity_policy: IntegrityPolicy = IntegrityPolicy.abort
    allow_json_recovery: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class ExportSettings(BaseModel):
    """Metadata stamped on exported bundles."""

    exported_by: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class SyncConfig(BaseModel):
    """Top level configuration schema validated from TOML files."""

    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    transport: TransportPolicy = Field(default_factory=TransportPolicy)
    merge: MergePolicy = Field(default_factory=MergePolicy)
    export: ExportSettings = Field(default_factory=ExportSettings)

    model_config = ConfigDict(extra="forbid")


__all__ = [
    "ENTITY_FIELD",
    "Conflict",
    "ConflictKind",
    "ConflictStatus",
    "EntityType",
    "ExportSettings",
    "FieldError",
    "IntegrityPolicy",
    "MergePolicy",
    "OverAllocationWarning",
    "PhaseBoundsWarning",
    "RepositorySettings",
    "Resolution",
    "ResolutionOutcome",
    "ResolutionStrategy",
    "ResolvedEntity",
    "ScenarioExport",
    "Snapshot",
    "SyncConfig",
    "SyncFailureKind",
    "TransportPolicy",
    "ValidationResult",
    "validate_scenario_id",
]
