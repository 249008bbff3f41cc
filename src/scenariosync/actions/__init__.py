"""Action helpers orchestrating git operations for scenario synchronisation."""

from .safety import create_backup_ref, require_clean_worktree, restore_backup_ref
from .sync import (
    FinalizeResult,
    MergeContext,
    PublishResult,
    finalize_merge,
    open_merge_session,
    publish_scenario,
)

__all__ = [
    "FinalizeResult",
    "MergeContext",
    "PublishResult",
    "create_backup_ref",
    "finalize_merge",
    "open_merge_session",
    "publish_scenario",
    "require_clean_worktree",
    "restore_backup_ref",
]
