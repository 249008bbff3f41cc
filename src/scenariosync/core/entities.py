"""Record schemas for every planning entity type.

Records travel as camelCase JSON objects. The schemas validate in strict mode
so a value that only looks right (``"5"`` for a priority, ``true`` for a
percentage) is rejected instead of coerced.
"""

from __future__ import annotations

from datetime import date, datetime
import re
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from scenariosync.core.models import EntityType


_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")
_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def _check_date(value: str) -> str:
    if not _DATE_PATTERN.fullmatch(value):
        msg = "must be a date formatted as YYYY-MM-DD"
        raise ValueError(msg)
    date.fromisoformat(value)
    return value


def _check_datetime(value: str) -> str:
    if not _DATETIME_PATTERN.match(value):
        msg = "must be an ISO-8601 datetime with a time component"
        raise ValueError(msg)
    datetime.fromisoformat(value)
    return value


def _check_not_blank(value: str) -> str:
    if not value.strip():
        msg = "must not be blank"
        raise ValueError(msg)
    return value


IsoDate = Annotated[str, AfterValidator(_check_date)]
IsoDateTime = Annotated[str, AfterValidator(_check_datetime)]
EntityId = Annotated[str, StringConstraints(min_length=1, max_length=128)]
Name = Annotated[str, StringConstraints(min_length=1, max_length=255), AfterValidator(_check_not_blank)]
Description = Annotated[str, StringConstraints(max_length=4000)]


class EntityRecord(BaseModel):
    """Fields shared by every entity record."""

    id: EntityId
    created_at: IsoDateTime
    updated_at: IsoDateTime

    model_config = ConfigDict(
        strict=True,
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
    )


class ProjectRecord(EntityRecord):
    """A project competing for people's time."""

    name: Name
    description: Description | None = None
    project_type_id: EntityId | None = None
    location_id: EntityId | None = None
    priority: int = Field(ge=1, le=5)
    aspiration_start: IsoDate | None = None
    aspiration_finish: IsoDate | None = None
    status: Literal["planned", "active", "on_hold", "completed", "cancelled"] | None = None


class PersonRecord(EntityRecord):
    """A person who can be assigned to projects."""

    name: Name
    email: Annotated[str, StringConstraints(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")] | None = None
    primary_role_id: EntityId | None = None
    location_id: EntityId | None = None
    supervisor_id: EntityId | None = None
    seniority_level: Literal["junior", "mid", "senior", "lead", "principal"] | None = None
    availability_percentage: float | None = Field(default=None, ge=0, le=100)
    worker_type: Literal["FTE", "Contractor", "Consultant"] | None = None


class AssignmentRecord(EntityRecord):
    """A share of a person's time booked on a project for a date range."""

    project_id: EntityId
    person_id: EntityId
    role_id: EntityId | None = None
    phase_id: EntityId | None = None
    allocation_percentage: float = Field(ge=0, le=200)
    start_date: IsoDate
    end_date: IsoDate
    notes: Description | None = None


class ProjectPhaseRecord(EntityRecord):
    """A dated stage of a project."""

    project_id: EntityId
    name: Name
    start_date: IsoDate
    end_date: IsoDate
    order_index: int | None = Field(default=None, ge=0)
    description: Description | None = None


class RoleRecord(EntityRecord):
    """A role a person can fill."""

    name: Name
    description: Description | None = None


class LocationRecord(EntityRecord):
    """An office or region."""

    name: Name
    timezone: Annotated[str, StringConstraints(min_length=1, max_length=64)] | None = None
    description: Description | None = None


class ProjectTypeRecord(EntityRecord):
    """A category of project, optionally nested under a parent type."""

    name: Name
    description: Description | None = None
    color: Annotated[str, StringConstraints(pattern=_COLOR_PATTERN)] | None = None
    parent_id: EntityId | None = None


ENTITY_SCHEMAS: dict[EntityType, type[EntityRecord]] = {
    EntityType.project: ProjectRecord,
    EntityType.person: PersonRecord,
    EntityType.assignment: AssignmentRecord,
    EntityType.project_phase: ProjectPhaseRecord,
    EntityType.role: RoleRecord,
    EntityType.location: LocationRecord,
    EntityType.project_type: ProjectTypeRecord,
}

DATE_RANGES: dict[EntityType, tuple[str, str]] = {
    EntityType.project: ("aspirationStart", "aspirationFinish"),
    EntityType.assignment: ("startDate", "endDate"),
    EntityType.project_phase: ("startDate", "endDate"),
}
"""Start/end field pairs whose end must not precede the start."""

SYSTEM_FIELDS = frozenset({"id", "createdAt", "updatedAt"})
"""Identity and audit fields that never take part in conflict detection."""


__all__ = [
    "DATE_RANGES",
    "ENTITY_SCHEMAS",
    "SYSTEM_FIELDS",
    "AssignmentRecord",
    "EntityRecord",
    "LocationRecord",
    "PersonRecord",
    "ProjectPhaseRecord",
    "ProjectRecord",
    "ProjectTypeRecord",
    "RoleRecord",
]
