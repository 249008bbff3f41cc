"""Merge sessions: the conflict state machine behind the resolution UI."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import threading
from typing import TYPE_CHECKING, Any

from scenariosync.core.allocation import find_over_allocations
from scenariosync.core.diff import DiffEngine
from scenariosync.core.errors import (
    IncompleteMergeError,
    ReferentialIntegrityError,
    ResolutionStateError,
    SessionBusyError,
    ValidationError,
)
from scenariosync.core.guard import CorruptionGuard
from scenariosync.core.models import (
    Conflict,
    ConflictStatus,
    EntityType,
    OverAllocationWarning,
    ResolutionOutcome,
    Snapshot,
    validate_scenario_id,
)
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry
from scenariosync.core.resolver import ConflictResolver
from scenariosync.io.logging import StructuredLogger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from scenariosync.core.models import Resolution, ResolvedEntity
    from scenariosync.core.store import EntityStore


_OPEN = "open"
_COMMITTED = "committed"
_ABANDONED = "abandoned"


@dataclass(frozen=True, slots=True)
class CommitReport:
    """Summary of a merged state written back to the entity store."""

    scenario_id: str
    record_count: int
    resolved: tuple[str, ...]
    deferred: tuple[str, ...]
    warnings: tuple[OverAllocationWarning, ...]


class MergeSession:
    """Track the conflicts of one scenario merge until they are settled.

    Conflict lifecycle::

        pending --resolve--> resolved (terminal)
        pending --defer----> deferred --reopen--> pending

    A resolution whose guardrail produces an over-allocation warning is only
    staged; it is applied once the caller acknowledges the warning.
    """

    def __init__(
        self,
        scenario_id: str,
        base: Snapshot,
        local: Snapshot,
        remote: Snapshot,
        *,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        resolver: ConflictResolver | None = None,
        confirm_deletions: bool = True,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Diff the three snapshots and open a session over the resulting conflicts."""
        self._scenario_id = validate_scenario_id(scenario_id)
        self._registry = registry
        self._resolver = resolver or ConflictResolver(registry)
        self._local = local
        self._remote = remote
        self._logger = (logger or StructuredLogger(name="scenariosync.session")).bind(
            scenario_id=scenario_id,
        )
        result = DiffEngine(registry, confirm_deletions=confirm_deletions).merge(base, local, remote)
        self._conflicts: dict[str, Conflict] = {conflict.id: conflict for conflict in result.conflicts}
        self._status: dict[str, ConflictStatus] = dict.fromkeys(self._conflicts, ConflictStatus.pending)
        self._staged: dict[str, Resolution] = {}
        self._resolutions: dict[str, Resolution] = {}
        self._working: dict[EntityType, dict[str, dict[str, Any]]] = {
            entity_type: {str(record["id"]): record for record in records}
            for entity_type, records in result.merged.entities.items()
        }
        self._state = _OPEN
        self._logger.info(
            "merge session opened",
            conflicts=len(self._conflicts),
            records=result.merged.count(),
        )

    @property
    def scenario_id(self) -> str:
        """Return the scenario being merged."""
        return self._scenario_id

    @property
    def conflicts(self) -> tuple[Conflict, ...]:
        """Return every conflict in stable order regardless of its status."""
        return tuple(self._conflicts.values())

    @property
    def is_open(self) -> bool:
        """Return True until the session is committed or abandoned."""
        return self._state == _OPEN

    @property
    def is_complete(self) -> bool:
        """Return True when every conflict is either resolved or deferred."""
        return not self.pending()

    def conflict(self, conflict_id: str) -> Conflict:
        """Return the conflict registered under ``conflict_id``."""
        try:
            return self._conflicts[conflict_id]
        except KeyError:
            msg = f"unknown conflict {conflict_id}"
            raise ResolutionStateError(msg) from None

    def status(self, conflict_id: str) -> ConflictStatus:
        """Return the lifecycle state of ``conflict_id``."""
        self.conflict(conflict_id)
        return self._status[conflict_id]

    def pending(self) -> list[Conflict]:
        """Return the conflicts that still need a decision."""
        return self._with_status(ConflictStatus.pending)

    def deferred(self) -> list[Conflict]:
        """Return the conflicts postponed to a later session."""
        return self._with_status(ConflictStatus.deferred)

    def resolved(self) -> list[Conflict]:
        """Return the conflicts already settled."""
        return self._with_status(ConflictStatus.resolved)

    def awaiting_acknowledgement(self) -> list[Conflict]:
        """Return the conflicts whose staged resolution raised warnings."""
        return [self._conflicts[conflict_id] for conflict_id in self._staged]

    def resolution_for(self, conflict_id: str) -> Resolution | None:
        """Return the resolution applied to ``conflict_id`` if any."""
        return self._resolutions.get(conflict_id)

    def resolve(
        self,
        conflict_id: str,
        resolution: Resolution,
        *,
        acknowledge_warnings: bool = False,
    ) -> ResolutionOutcome:
        """Apply ``resolution`` to a pending conflict.

        Validation failures are reported in the outcome and leave the conflict
        pending. Over-allocation warnings stage the resolution instead of
        applying it unless ``acknowledge_warnings`` is set.
        """
        self._ensure_open()
        conflict = self.conflict(conflict_id)
        status = self._status[conflict_id]
        if status is not ConflictStatus.pending:
            msg = f"conflict {conflict_id} is {status.value}; only pending conflicts can be resolved"
            raise ResolutionStateError(msg)

        try:
            resolved = self._resolver.resolve(
                conflict,
                resolution,
                merged=self.merged_state(),
                local=self._local,
                remote=self._remote,
            )
        except ValidationError as exc:
            self._logger.warning("resolution rejected", conflict=conflict_id, error=str(exc))
            return ResolutionOutcome(
                conflict_id=conflict_id,
                success=False,
                applied=False,
                status=ConflictStatus.pending,
                error=str(exc),
            )

        if resolved.warnings and not acknowledge_warnings:
            self._staged[conflict_id] = resolution
            self._logger.warning(
                "resolution awaiting acknowledgement",
                conflict=conflict_id,
                warnings=[warning.message for warning in resolved.warnings],
            )
            return ResolutionOutcome(
                conflict_id=conflict_id,
                success=True,
                applied=False,
                status=ConflictStatus.pending,
                warnings=resolved.warnings,
                phase_warnings=resolved.phase_warnings,
            )

        self._apply(conflict_id, resolution, resolved)
        return ResolutionOutcome(
            conflict_id=conflict_id,
            success=True,
            applied=True,
            status=ConflictStatus.resolved,
            warnings=resolved.warnings,
            phase_warnings=resolved.phase_warnings,
        )

    def acknowledge(self, conflict_id: str) -> ResolutionOutcome:
        """Apply the staged resolution of ``conflict_id`` despite its warnings.

        Warnings are recomputed against the current merged state first.
        """
        resolution = self._staged.get(conflict_id)
        if resolution is None:
            msg = f"conflict {conflict_id} has no resolution awaiting acknowledgement"
            raise ResolutionStateError(msg)
        return self.resolve(conflict_id, resolution, acknowledge_warnings=True)

    def defer(self, conflict_id: str) -> None:
        """Postpone ``conflict_id``; its local value stays in the merged state."""
        self._ensure_open()
        status = self.status(conflict_id)
        if status is ConflictStatus.resolved:
            msg = f"conflict {conflict_id} is already resolved"
            raise ResolutionStateError(msg)
        self._staged.pop(conflict_id, None)
        self._status[conflict_id] = ConflictStatus.deferred
        self._logger.info("conflict deferred", conflict=conflict_id)

    def reopen(self, conflict_id: str) -> None:
        """Move a deferred conflict back to pending."""
        self._ensure_open()
        if self.status(conflict_id) is not ConflictStatus.deferred:
            msg = f"conflict {conflict_id} is not deferred"
            raise ResolutionStateError(msg)
        self._status[conflict_id] = ConflictStatus.pending

    def merged_state(self) -> Snapshot:
        """Return the current merged snapshot including applied resolutions."""
        entities = {
            entity_type: [records[entity_id] for entity_id in sorted(records)]
            for entity_type, records in self._working.items()
        }
        return Snapshot(name="merged", entities=entities)

    def warnings(self) -> list[OverAllocationWarning]:
        """Recompute every over-allocation in the current merged state."""
        merged = self.merged_state()
        return find_over_allocations(
            merged.records(EntityType.assignment),
            merged.index(EntityType.person),
            threshold=self._resolver.allocation_threshold,
        )

    def commit_merged_state(
        self,
        store: EntityStore,
        *,
        allow_dangling_references: bool = False,
    ) -> CommitReport:
        """Write the merged state to ``store`` and close the session.

        Raises:
            IncompleteMergeError: if any conflict is still pending.
            ReferentialIntegrityError: if the merged state references missing
                entities and ``allow_dangling_references`` is not set.

        """
        commit = self.write_merged_state(store, allow_dangling_references=allow_dangling_references)
        self.mark_committed()
        return commit

    def write_merged_state(
        self,
        store: EntityStore,
        *,
        allow_dangling_references: bool = False,
    ) -> CommitReport:
        """Write the merged state to ``store`` but keep the session open.

        Callers that persist the store further (a repository commit) call
        :meth:`mark_committed` once that succeeded; until then the session can
        be written again.
        """
        self._ensure_open()
        pending = [conflict.id for conflict in self.pending()]
        if pending:
            raise IncompleteMergeError(pending)

        merged = self.merged_state()
        report = CorruptionGuard(self._registry).check_snapshot(merged)
        if report.invalid_records:
            issue = report.invalid_records[0]
            raise ValidationError(issue.entity_type, issue.entity_id, issue.errors, index=issue.index)
        if report.dangling_references and not allow_dangling_references:
            raise ReferentialIntegrityError(merged.name, report.dangling_references)

        store.replace_entities(self._scenario_id, merged.entities)
        commit = CommitReport(
            scenario_id=self._scenario_id,
            record_count=merged.count(),
            resolved=tuple(conflict.id for conflict in self.resolved()),
            deferred=tuple(conflict.id for conflict in self.deferred()),
            warnings=tuple(self.warnings()),
        )
        self._logger.info(
            "merged state written",
            records=commit.record_count,
            resolved=len(commit.resolved),
            deferred=len(commit.deferred),
        )
        return commit

    def mark_committed(self) -> None:
        """Close the session after its merged state has been persisted."""
        self._ensure_open()
        self._state = _COMMITTED
        self._logger.info("merge session committed")

    def abandon(self) -> None:
        """Close the session without writing anything."""
        self._ensure_open()
        self._state = _ABANDONED
        self._logger.info("merge session abandoned", pending=len(self.pending()))

    def _apply(self, conflict_id: str, resolution: Resolution, resolved: ResolvedEntity) -> None:
        records = self._working.setdefault(resolved.entity_type, {})
        if resolved.record is None:
            records.pop(resolved.entity_id, None)
        else:
            records[resolved.entity_id] = resolved.record
        self._staged.pop(conflict_id, None)
        self._resolutions[conflict_id] = resolution
        self._status[conflict_id] = ConflictStatus.resolved
        self._logger.info(
            "conflict resolved",
            conflict=conflict_id,
            strategy=resolution.strategy.value,
            warnings=len(resolved.warnings),
        )

    def _with_status(self, status: ConflictStatus) -> list[Conflict]:
        return [
            conflict
            for conflict_id, conflict in self._conflicts.items()
            if self._status[conflict_id] is status
        ]

    def _ensure_open(self) -> None:
        if self._state != _OPEN:
            msg = f"merge session for {self._scenario_id} is {self._state}"
            raise ResolutionStateError(msg)


class ScenarioLocks:
    """One lock per scenario so only one merge session runs against it at a time."""

    def __init__(self) -> None:
        """Create an empty lock registry."""
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, scenario_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(scenario_id, threading.Lock())

    def is_locked(self, scenario_id: str) -> bool:
        """Return True while a session holds ``scenario_id``."""
        return self._lock_for(scenario_id).locked()

    @contextmanager
    def hold(self, scenario_id: str, *, timeout: float | None = None) -> Iterator[None]:
        """Hold the scenario lock for the duration of the block.

        Raises :class:`SessionBusyError` immediately (or after ``timeout``
        seconds) when another session holds it.
        """
        lock = self._lock_for(scenario_id)
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire(blocking=False)
        if not acquired:
            raise SessionBusyError(scenario_id)
        try:
            yield
        finally:
            lock.release()


__all__ = ["CommitReport", "MergeSession", "ScenarioLocks"]
