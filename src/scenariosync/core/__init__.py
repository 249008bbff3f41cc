"""Core scenario synchronisation components for scenariosync."""

from .diff import DiffEngine, MergeResult, diff, three_way_merge
from .errors import (
    CorruptionError,
    IncompleteMergeError,
    ReferentialIntegrityError,
    RepositoryStateError,
    ResolutionStateError,
    ScenarioSyncError,
    SessionBusyError,
    SyncError,
    UnmergedScenariosError,
    ValidationError,
)
from .exporter import EntityExporter
from .guard import CorruptionGuard, SnapshotReport
from .models import (
    Conflict,
    ConflictKind,
    ConflictStatus,
    EntityType,
    OverAllocationWarning,
    Resolution,
    ResolutionOutcome,
    ResolutionStrategy,
    ScenarioExport,
    Snapshot,
    SyncConfig,
    ValidationResult,
)
from .registry import DEFAULT_REGISTRY, SCHEMA_VERSION, SchemaRegistry
from .resolver import ConflictResolver
from .session import CommitReport, MergeSession, ScenarioLocks
from .store import DirectoryEntityStore, EntityStore, InMemoryEntityStore

__all__ = [
    "DEFAULT_REGISTRY",
    "SCHEMA_VERSION",
    "CommitReport",
    "Conflict",
    "ConflictKind",
    "ConflictResolver",
    "ConflictStatus",
    "CorruptionError",
    "CorruptionGuard",
    "DiffEngine",
    "DirectoryEntityStore",
    "EntityExporter",
    "EntityStore",
    "EntityType",
    "InMemoryEntityStore",
    "IncompleteMergeError",
    "MergeResult",
    "MergeSession",
    "OverAllocationWarning",
    "ReferentialIntegrityError",
    "RepositoryStateError",
    "Resolution",
    "ResolutionOutcome",
    "ResolutionStateError",
    "ResolutionStrategy",
    "ScenarioExport",
    "ScenarioLocks",
    "ScenarioSyncError",
    "SchemaRegistry",
    "SessionBusyError",
    "Snapshot",
    "SnapshotReport",
    "SyncConfig",
    "SyncError",
    "UnmergedScenariosError",
    "ValidationError",
    "ValidationResult",
    "diff",
    "three_way_merge",
]
