"""Apply a single resolution to a conflict and evaluate the guardrails."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from scenariosync.core.allocation import check_assignment, phase_bounds_warnings
from scenariosync.core.errors import ValidationError
from scenariosync.core.models import (
    EntityType,
    FieldError,
    OverAllocationWarning,
    PhaseBoundsWarning,
    ResolutionStrategy,
    ResolvedEntity,
)
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry

if TYPE_CHECKING:
    from collections.abc import Mapping

    from scenariosync.core.models import Conflict, Resolution, Snapshot


_ALLOCATION_FIELDS = frozenset({"*", "personId", "allocationPercentage", "startDate", "endDate"})
_SCHEDULE_FIELDS = frozenset({"*", "aspirationStart", "aspirationFinish", "startDate", "endDate", "projectId"})


class ConflictResolver:
    """Turn a (conflict, resolution) pair into the resulting entity state.

    The resolver is stateless: the working merged snapshot and the three input
    snapshots are passed in on every call, so warnings always reflect the
    current state rather than the state at diff time.
    """

    def __init__(
        self,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        *,
        allocation_threshold: float = 100.0,
    ) -> None:
        """Create a resolver flagging allocations above ``allocation_threshold``."""
        self._registry = registry
        self._allocation_threshold = allocation_threshold

    @property
    def allocation_threshold(self) -> float:
        """Return the percentage above which a person counts as over-allocated."""
        return self._allocation_threshold

    def resolve(
        self,
        conflict: Conflict,
        resolution: Resolution,
        *,
        merged: Snapshot,
        local: Snapshot,
        remote: Snapshot,
    ) -> ResolvedEntity:
        """Apply ``resolution`` to ``conflict`` on top of the ``merged`` working state.

        Raises:
            ValueError: if the resolution addresses another conflict.
            ValidationError: if the resulting entity violates its schema. The
                conflict stays unresolved.

        """
        if resolution.conflict_id != conflict.id:
            msg = f"resolution for {resolution.conflict_id} cannot settle {conflict.id}"
            raise ValueError(msg)

        if conflict.is_entity_level:
            record = self._entity_level_record(conflict, resolution, local, remote)
        else:
            current = merged.index(conflict.entity_type).get(conflict.entity_id)
            record = self._field_level_record(conflict, resolution, current, local, remote)

        if record is not None:
            result = self._registry.validate(conflict.entity_type, record)
            if not result.success:
                raise ValidationError(conflict.entity_type, conflict.entity_id, result.errors)

        warnings: tuple[OverAllocationWarning, ...] = ()
        phase_warnings: tuple[PhaseBoundsWarning, ...] = ()
        affects_allocation = (
            conflict.entity_type is EntityType.assignment and conflict.field in _ALLOCATION_FIELDS
        )
        if record is not None and affects_allocation:
            warning = check_assignment(
                record,
                merged.records(EntityType.assignment),
                merged.index(EntityType.person),
                threshold=self._allocation_threshold,
            )
            warnings = (warning,) if warning is not None else ()
        if record is not None and conflict.field in _SCHEDULE_FIELDS:
            phase_warnings = tuple(self._schedule_warnings(conflict.entity_type, record, merged))

        return ResolvedEntity(
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            record=record,
            warnings=warnings,
            phase_warnings=phase_warnings,
        )

    def _entity_level_record(
        self,
        conflict: Conflict,
        resolution: Resolution,
        local: Snapshot,
        remote: Snapshot,
    ) -> dict[str, Any] | None:
        if resolution.strategy is ResolutionStrategy.accept_local:
            source = local.index(conflict.entity_type).get(conflict.entity_id)
            return dict(source) if source is not None else None
        if resolution.strategy is ResolutionStrategy.accept_remote:
            source = remote.index(conflict.entity_type).get(conflict.entity_id)
            return dict(source) if source is not None else None
        value = resolution.custom_value
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValidationError(
                conflict.entity_type,
                conflict.entity_id,
                [FieldError(path="", message="custom value for an entity must be a record or null")],
            )
        if value.get("id") != conflict.entity_id:
            raise ValidationError(
                conflict.entity_type,
                conflict.entity_id,
                [FieldError(path="id", message="custom record must keep the entity id")],
            )
        return dict(value)

    def _field_level_record(
        self,
        conflict: Conflict,
        resolution: Resolution,
        current: Mapping[str, Any] | None,
        local: Snapshot,
        remote: Snapshot,
    ) -> dict[str, Any]:
        record = dict(current) if current is not None else {}
        if resolution.strategy is ResolutionStrategy.custom:
            result = self._registry.validate_field(
                conflict.entity_type, conflict.field, resolution.custom_value, record,
            )
            if not result.success:
                raise ValidationError(conflict.entity_type, conflict.entity_id, result.errors)
            record[conflict.field] = resolution.custom_value
            return record

        snapshot = local if resolution.strategy is ResolutionStrategy.accept_local else remote
        source = snapshot.index(conflict.entity_type).get(conflict.entity_id, {})
        if conflict.field in source:
            record[conflict.field] = source[conflict.field]
        else:
            record.pop(conflict.field, None)
        return record

    def _schedule_warnings(
        self,
        entity_type: EntityType,
        record: Mapping[str, Any],
        merged: Snapshot,
    ) -> list[PhaseBoundsWarning]:
        if entity_type is EntityType.project:
            return phase_bounds_warnings(record, merged.records(EntityType.project_phase))
        if entity_type is EntityType.project_phase:
            project = merged.index(EntityType.project).get(str(record.get("projectId")))
            if project is None:
                return []
            return [
                warning
                for warning in phase_bounds_warnings(project, [record])
                if warning.phase_id == record.get("id")
            ]
        return []


__all__ = ["ConflictResolver"]
