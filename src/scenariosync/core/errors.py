"""Error taxonomy for scenario synchronization.

Conflicts are ordinary results and never appear here. Every exception carries
the structured context needed to render it without parsing the message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scenariosync.core.models import EntityType, FieldError, SyncFailureKind


class ScenarioSyncError(RuntimeError):
    """Base class for all scenariosync failures."""

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        return {"error": type(self).__name__, "message": str(self)}


class ValidationError(ScenarioSyncError):
    """Raised when a record (or custom resolution value) violates its schema."""

    def __init__(
        self,
        entity_type: EntityType,
        entity_id: str | None,
        errors: Sequence[FieldError],
        *,
        index: int | None = None,
    ) -> None:
        """Record which entity failed and every violated field path."""
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.errors = tuple(errors)
        self.index = index
        location = f"{entity_type.value} {entity_id}" if entity_id else entity_type.value
        if index is not None:
            location = f"{location} (record {index})"
        details = "; ".join(str(item) for item in self.errors)
        super().__init__(f"invalid {location}: {details}")

    @property
    def paths(self) -> tuple[str, ...]:
        """Return the violated field paths."""
        return tuple(item.path for item in self.errors)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        payload = super().to_dict()
        payload.update(
            {
                "entity_type": self.entity_type.value,
                "entity_id": self.entity_id,
                "index": self.index,
                "errors": [item.model_dump() for item in self.errors],
            },
        )
        return payload


class CorruptionError(ScenarioSyncError):
    """Raised when a snapshot document is unreadable or has an unsupported version."""

    def __init__(self, snapshot: str, reason: str, *, path: str | None = None) -> None:
        """Name the snapshot (and file) that could not be trusted."""
        self.snapshot = snapshot
        self.reason = reason
        self.path = path
        where = f"{snapshot}:{path}" if path else snapshot
        super().__init__(f"corrupted snapshot {where}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        payload = super().to_dict()
        payload.update({"snapshot": self.snapshot, "path": self.path, "reason": self.reason})
        return payload


class ReferentialIntegrityError(ScenarioSyncError):
    """Raised when a snapshot references entities it does not contain."""

    def __init__(self, snapshot: str, violations: Sequence[Any]) -> None:
        """Keep the dangling references so callers can report them."""
        self.snapshot = snapshot
        self.violations = tuple(violations)
        super().__init__(
            f"snapshot {snapshot} has {len(self.violations)} dangling reference(s)",
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        payload = super().to_dict()
        payload.update(
            {
                "snapshot": self.snapshot,
                "violations": [violation.model_dump(mode="json") for violation in self.violations],
            },
        )
        return payload


class SyncError(ScenarioSyncError):
    """Raised when a remote git operation fails after its retry budget."""

    def __init__(
        self,
        operation: str,
        kind: SyncFailureKind,
        message: str,
        *,
        retryable: bool = False,
        attempts: int = 1,
    ) -> None:
        """Classify the failed ``operation`` so callers can decide what to do next."""
        self.operation = operation
        self.kind = kind
        self.retryable = retryable
        self.attempts = attempts
        self.detail = message
        super().__init__(f"{operation} failed ({kind.value}) after {attempts} attempt(s): {message}")

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        payload = super().to_dict()
        payload.update(
            {
                "operation": self.operation,
                "kind": self.kind.value,
                "retryable": self.retryable,
                "attempts": self.attempts,
            },
        )
        return payload


class RepositoryStateError(ScenarioSyncError):
    """Raised when the local repository is not in a state that allows the operation."""


class ResolutionStateError(ScenarioSyncError):
    """Raised on an illegal conflict or session state transition."""


class IncompleteMergeError(ScenarioSyncError):
    """Raised when committing a merge that still has pending conflicts."""

    def __init__(self, pending: Sequence[str]) -> None:
        """Keep the identifiers of the conflicts that block the commit."""
        self.pending = tuple(pending)
        super().__init__(f"{len(self.pending)} conflict(s) still pending: {', '.join(self.pending)}")


class SessionBusyError(ScenarioSyncError):
    """Raised when another merge session already holds a scenario."""

    def __init__(self, scenario_id: str) -> None:
        """Name the scenario that is locked."""
        self.scenario_id = scenario_id
        super().__init__(f"scenario {scenario_id} is already being merged")


class UnmergedScenariosError(ScenarioSyncError):
    """Raised when other scenarios changed on both sides and need their own resolutions."""

    def __init__(self, scenarios: Sequence[str]) -> None:
        """Name the scenarios that must be merged in the same step."""
        self.scenarios = tuple(scenarios)
        super().__init__(
            f"scenario(s) {', '.join(self.scenarios)} also have conflicting changes; "
            "merge them together with this one",
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly description of the error."""
        payload = super().to_dict()
        payload["scenarios"] = list(self.scenarios)
        return payload


__all__ = [
    "CorruptionError",
    "IncompleteMergeError",
    "ReferentialIntegrityError",
    "RepositoryStateError",
    "ResolutionStateError",
    "ScenarioSyncError",
    "SessionBusyError",
    "SyncError",
    "UnmergedScenariosError",
    "ValidationError",
]
