"""Three-way comparison of entity snapshots.

The engine walks every entity of every type present in any of the three
snapshots, classifies each divergence and produces both the conflict list and
an auto-merged snapshot. Local values stand in for conflicted fields until a
resolution replaces them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, cast

from scenariosync.core.entities import DATE_RANGES, SYSTEM_FIELDS
from scenariosync.core.models import ENTITY_FIELD, Conflict, ConflictKind, EntityType, Snapshot
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry

if TYPE_CHECKING:
    from collections.abc import Mapping


_MISSING = object()


def json_equal(left: Any, right: Any) -> bool:
    """Compare two JSON values structurally.

    Booleans never equal numbers, integers equal floats of the same value and
    lists compare element by element in order.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, int | float) and isinstance(right, int | float):
        return left == right
    if isinstance(left, dict) and isinstance(right, dict):
        left_map = cast("dict[str, Any]", left)
        right_map = cast("dict[str, Any]", right)
        if left_map.keys() != right_map.keys():
            return False
        return all(json_equal(left_map[key], right_map[key]) for key in left_map)
    if isinstance(left, list) and isinstance(right, list):
        left_items = cast("list[Any]", left)
        right_items = cast("list[Any]", right)
        if len(left_items) != len(right_items):
            return False
        return all(json_equal(a, b) for a, b in zip(left_items, right_items, strict=True))
    return type(left) is type(right) and left == right


def content_equal(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    """Compare two records ignoring identity and audit fields."""
    return json_equal(
        {key: value for key, value in left.items() if key not in SYSTEM_FIELDS},
        {key: value for key, value in right.items() if key not in SYSTEM_FIELDS},
    )


def _exposed(value: Any) -> Any:
    return None if value is _MISSING else value


def _latest(first: Any, second: Any) -> Any:
    if not isinstance(first, str):
        return second if isinstance(second, str) else first
    if not isinstance(second, str):
        return first
    try:
        return first if datetime.fromisoformat(first) >= datetime.fromisoformat(second) else second
    except ValueError:
        return max(first, second)


def conflict_id(entity_type: EntityType, entity_id: str, field: str) -> str:
    """Return the stable identifier of a conflict."""
    return f"{entity_type.value}:{entity_id}:{field}"


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Auto-merged snapshot together with the conflicts that still need a decision."""

    merged: Snapshot
    conflicts: tuple[Conflict, ...]

    @property
    def clean(self) -> bool:
        """Return True when no conflict was detected."""
        return not self.conflicts


class DiffEngine:
    """Compare base, local and remote snapshots entity by entity."""

    def __init__(
        self,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        *,
        confirm_deletions: bool = True,
    ) -> None:
        """Create an engine.

        With ``confirm_deletions`` disabled, deleting an entity the other side
        left untouched merges cleanly instead of raising a deletion conflict.
        """
        self._registry = registry
        self._confirm_deletions = confirm_deletions

    def diff(self, base: Snapshot, local: Snapshot, remote: Snapshot) -> list[Conflict]:
        """Return the conflicts between ``local`` and ``remote`` relative to ``base``."""
        return list(self.merge(base, local, remote).conflicts)

    def merge(self, base: Snapshot, local: Snapshot, remote: Snapshot) -> MergeResult:
        """Auto-merge the three snapshots and collect the conflicts."""
        merged_entities: dict[EntityType, list[dict[str, Any]]] = {}
        conflicts: list[Conflict] = []
        for entity_type in self._registry.entity_types:
            if not (base.has(entity_type) or local.has(entity_type) or remote.has(entity_type)):
                continue
            records, found = self._merge_type(
                entity_type,
                base.index(entity_type),
                local.index(entity_type),
                remote.index(entity_type),
            )
            merged_entities[entity_type] = records
            conflicts.extend(found)
        return MergeResult(
            merged=Snapshot(name="merged", entities=merged_entities),
            conflicts=tuple(conflicts),
        )

    def _merge_type(
        self,
        entity_type: EntityType,
        base: Mapping[str, dict[str, Any]],
        local: Mapping[str, dict[str, Any]],
        remote: Mapping[str, dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], list[Conflict]]:
        records: list[dict[str, Any]] = []
        conflicts: list[Conflict] = []
        for entity_id in sorted(set(base) | set(local) | set(remote)):
            base_record = base.get(entity_id)
            local_record = local.get(entity_id)
            remote_record = remote.get(entity_id)

            if local_record is not None and remote_record is not None:
                if base_record is None and json_equal(local_record, remote_record):
                    records.append(dict(local_record))
                    continue
                kind = ConflictKind.field if base_record is not None else ConflictKind.creation
                merged, found = self._merge_fields(
                    entity_type, entity_id, base_record or {}, local_record, remote_record, kind,
                )
                records.append(merged)
                conflicts.extend(found)
                continue

            if base_record is None:
                # created on one side only
                survivor = local_record if local_record is not None else remote_record
                if survivor is not None:
                    records.append(dict(survivor))
                continue

            if local_record is None and remote_record is None:
                continue

            kept = local_record if local_record is not None else remote_record
            if kept is not None and not self._confirm_deletions and content_equal(kept, base_record):
                continue
            conflicts.append(
                Conflict(
                    id=conflict_id(entity_type, entity_id, ENTITY_FIELD),
                    entity_type=entity_type,
                    entity_id=entity_id,
                    entity_name=self._registry.display_name(entity_type, kept or base_record),
                    field=ENTITY_FIELD,
                    kind=ConflictKind.deletion,
                    base_value=dict(base_record),
                    local_value=dict(local_record) if local_record is not None else None,
                    remote_value=dict(remote_record) if remote_record is not None else None,
                ),
            )
            if local_record is not None:
                records.append(dict(local_record))
        return records, conflicts

    def _merge_fields(
        self,
        entity_type: EntityType,
        entity_id: str,
        base: Mapping[str, Any],
        local: Mapping[str, Any],
        remote: Mapping[str, Any],
        kind: ConflictKind,
    ) -> tuple[dict[str, Any], list[Conflict]]:
        fields = list(local)
        fields.extend(name for name in remote if name not in local)
        fields.extend(name for name in base if name not in local and name not in remote)

        merged: dict[str, Any] = {}
        conflicts: list[Conflict] = []
        for name in fields:
            if name in SYSTEM_FIELDS:
                merged[name] = self._merge_system_field(name, base, local, remote)
                continue
            base_value = base.get(name, _MISSING)
            local_value = local.get(name, _MISSING)
            remote_value = remote.get(name, _MISSING)
            if json_equal(local_value, remote_value) or json_equal(base_value, remote_value):
                value = local_value
            elif json_equal(base_value, local_value):
                value = remote_value
            else:
                value = local_value
                conflicts.append(
                    Conflict(
                        id=conflict_id(entity_type, entity_id, name),
                        entity_type=entity_type,
                        entity_id=entity_id,
                        entity_name=self._registry.display_name(entity_type, local),
                        field=name,
                        kind=kind,
                        base_value=_exposed(base_value),
                        local_value=_exposed(local_value),
                        remote_value=_exposed(remote_value),
                    ),
                )
            if value is not _MISSING:
                merged[name] = value
        conflicts.extend(
            self._date_range_conflicts(entity_type, entity_id, base, local, remote, kind, merged, conflicts),
        )
        conflicts.sort(key=lambda conflict: conflict.field)
        return merged, conflicts

    def _date_range_conflicts(
        self,
        entity_type: EntityType,
        entity_id: str,
        base: Mapping[str, Any],
        local: Mapping[str, Any],
        remote: Mapping[str, Any],
        kind: ConflictKind,
        merged: dict[str, Any],
        found: list[Conflict],
    ) -> list[Conflict]:
        """Turn an inverted start/end pair built from one-sided edits into conflicts.

        Both fields fall back to the local values in ``merged`` and each one
        not already in conflict gets its own conflict.
        """
        pair = DATE_RANGES.get(entity_type)
        if pair is None:
            return []
        start_field, end_field = pair
        start, end = merged.get(start_field), merged.get(end_field)
        if not (isinstance(start, str) and isinstance(end, str) and end < start):
            return []
        if json_equal(start, local.get(start_field, _MISSING)) and json_equal(end, local.get(end_field, _MISSING)):
            return []

        already = {conflict.field for conflict in found}
        extra: list[Conflict] = []
        for name in pair:
            local_value = local.get(name, _MISSING)
            if local_value is _MISSING:
                merged.pop(name, None)
            else:
                merged[name] = local_value
            if name in already:
                continue
            extra.append(
                Conflict(
                    id=conflict_id(entity_type, entity_id, name),
                    entity_type=entity_type,
                    entity_id=entity_id,
                    entity_name=self._registry.display_name(entity_type, local),
                    field=name,
                    kind=kind,
                    base_value=_exposed(base.get(name, _MISSING)),
                    local_value=_exposed(local_value),
                    remote_value=_exposed(remote.get(name, _MISSING)),
                ),
            )
        return extra

    @staticmethod
    def _merge_system_field(
        name: str,
        base: Mapping[str, Any],
        local: Mapping[str, Any],
        remote: Mapping[str, Any],
    ) -> Any:
        if name == "updatedAt":
            return _latest(local.get(name), remote.get(name))
        for source in (local, remote, base):
            if name in source:
                return source[name]
        return None


def three_way_merge(
    base: Snapshot,
    local: Snapshot,
    remote: Snapshot,
    *,
    registry: SchemaRegistry = DEFAULT_REGISTRY,
    confirm_deletions: bool = True,
) -> MergeResult:
    """Auto-merge three snapshots with a one-off engine."""
    engine = DiffEngine(registry, confirm_deletions=confirm_deletions)
    return engine.merge(base, local, remote)


def diff(
    base: Snapshot,
    local: Snapshot,
    remote: Snapshot,
    *,
    registry: SchemaRegistry = DEFAULT_REGISTRY,
    confirm_deletions: bool = True,
) -> list[Conflict]:
    """Return the ordered conflicts between three snapshots."""
    return list(
        three_way_merge(
            base, local, remote, registry=registry, confirm_deletions=confirm_deletions,
        ).conflicts,
    )


__all__ = [
    "DiffEngine",
    "MergeResult",
    "conflict_id",
    "content_equal",
    "diff",
    "json_equal",
    "three_way_merge",
]
