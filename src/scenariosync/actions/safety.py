"""Safety-focused git actions: backup refs, restores and clean-tree checks."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from scenariosync.core.errors import RepositoryStateError
from scenariosync.git.parse import parse_porcelain_paths

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scenariosync.git.facade import GitFacade
    from scenariosync.io.logging import StructuredLogger


_BACKUP_PREFIX = "refs/backup/scenariosync"


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")


def create_backup_ref(facade: GitFacade, logger: StructuredLogger) -> str | None:
    """Create a backup ref pointing at ``HEAD`` and return its full name.

    Returns None when the repository has no commit yet.
    """
    head_result = facade.run(["git", "rev-parse", "--verify", "-q", "HEAD"], check=False)
    head_sha = head_result.stdout.strip()
    if head_result.returncode != 0 or not head_sha:
        logger.info("no commit to back up yet")
        return None
    ref_name = f"{_BACKUP_PREFIX}/{_timestamp()}"
    facade.run(["git", "update-ref", ref_name, head_sha])
    logger.info("created backup ref", ref=ref_name, sha=head_sha)
    return ref_name


def restore_backup_ref(
    facade: GitFacade,
    logger: StructuredLogger,
    ref_name: str,
    *,
    clean_paths: Sequence[str] | None = None,
) -> None:
    """Reset the branch, index and working tree to ``ref_name``.

    Untracked files below ``clean_paths`` are removed as well.
    """
    facade.run(["git", "merge", "--abort"], check=False)
    facade.run(["git", "reset", "--hard", "-q", ref_name])
    if clean_paths:
        facade.run(["git", "clean", "-f", "-d", "-q", "--", *clean_paths])
    logger.warning("restored backup ref", ref=ref_name)


def require_clean_worktree(facade: GitFacade, logger: StructuredLogger) -> None:
    """Raise :class:`RepositoryStateError` when tracked or untracked changes exist."""
    status = facade.run(["git", "status", "--porcelain", "-z", "--untracked-files=all"])
    dirty = parse_porcelain_paths(status.stdout)
    if dirty:
        logger.warning("working tree is dirty", paths=dirty)
        msg = f"Working tree has uncommitted changes: {', '.join(dirty)}"
        raise RepositoryStateError(msg)
    logger.debug("working tree clean")


__all__ = ["create_backup_ref", "require_clean_worktree", "restore_backup_ref"]
