"""Scenario repository adapter built on the git facade."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from scenariosync.core.errors import RepositoryStateError, SyncError
from scenariosync.core.models import EntityType, RepositorySettings, SyncFailureKind, TransportPolicy
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry
from scenariosync.git.errors import classify_failure, is_retryable, to_sync_error
from scenariosync.git.facade import GitCommandError
from scenariosync.git.parse import ChangedFile, parse_name_status, parse_porcelain_paths

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from scenariosync.git.facade import GitFacade
    from scenariosync.io.logging import StructuredLogger


_T = TypeVar("_T")

_MISSING_REMOTE_REF = "couldn't find remote ref"


@dataclass(frozen=True, slots=True)
class PullResult:
    """Position of the local branch relative to the freshly fetched remote branch."""

    remote_ref: str
    remote_sha: str | None
    ahead: int = 0
    behind: int = 0

    @property
    def diverged(self) -> bool:
        """Return True when both sides carry commits the other lacks."""
        return self.ahead > 0 and self.behind > 0


class ScenarioRepository:
    """Versioned storage for scenario bundles in a git working copy."""

    def __init__(
        self,
        facade: GitFacade,
        logger: StructuredLogger,
        *,
        settings: RepositorySettings | None = None,
        transport: TransportPolicy | None = None,
        registry: SchemaRegistry = DEFAULT_REGISTRY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the adapter to a facade; ``sleep`` is injectable for retry tests."""
        self._facade = facade
        self._logger = logger
        self._settings = settings or RepositorySettings()
        self._transport = transport or TransportPolicy()
        self._registry = registry
        self._sleep = sleep

    @property
    def path(self) -> Path:
        """Return the working copy root."""
        return self._facade.repo_path

    @property
    def facade(self) -> GitFacade:
        """Return the facade used to run git."""
        return self._facade

    @property
    def settings(self) -> RepositorySettings:
        """Return the remote, branch and directory settings."""
        return self._settings

    @property
    def remote_ref(self) -> str:
        """Return the remote-tracking ref of the configured branch."""
        return f"refs/remotes/{self._settings.remote}/{self._settings.branch}"

    def init(self) -> bool:
        """Create the repository if needed; return True when it was created."""
        if (self.path / ".git").exists():
            self._logger.debug("repository already initialised", path=str(self.path))
            return False
        self.path.mkdir(parents=True, exist_ok=True)
        self._facade.run(["git", "init", f"--initial-branch={self._settings.branch}"])
        self._logger.info("initialised scenario repository", path=str(self.path))
        return True

    def current_branch(self) -> str:
        """Return the checked out branch name."""
        result = self._facade.run(["git", "symbolic-ref", "--short", "-q", "HEAD"], check=False)
        branch = result.stdout.strip()
        if result.returncode != 0 or not branch:
            msg = "HEAD is detached; check out a branch first"
            raise RepositoryStateError(msg)
        return branch

    def rev_parse(self, ref: str) -> str | None:
        """Return the commit ``ref`` points at, or None when it does not exist."""
        result = self._facade.run(
            ["git", "rev-parse", "--verify", "-q", f"{ref}^{{commit}}"], check=False,
        )
        sha = result.stdout.strip()
        return sha if result.returncode == 0 and sha else None

    def head(self) -> str | None:
        """Return the HEAD commit, or None before the first commit."""
        return self.rev_parse("HEAD")

    def has_uncommitted_changes(self, paths: Sequence[str] | None = None) -> bool:
        """Return True when the working tree (or ``paths``) differs from HEAD."""
        command = ["git", "status", "--porcelain", "-z", "--untracked-files=all"]
        if paths:
            command.extend(["--", *paths])
        result = self._facade.run(command)
        return bool(parse_porcelain_paths(result.stdout))

    def commit(self, message: str, files: Sequence[str]) -> str:
        """Commit exactly ``files`` (additions, edits and deletions) and return the new sha.

        Nothing else may be staged. On failure the files are unstaged again and
        :class:`RepositoryStateError` reports that the commit was not applied.
        """
        if not files:
            msg = "No files to commit"
            raise RepositoryStateError(msg)
        prefixes = tuple(f"{item.rstrip('/')}/" for item in files)
        unexpected = sorted(
            path
            for path in self._staged_paths()
            if path not in files and not path.startswith(prefixes)
        )
        if unexpected:
            msg = f"Unrelated changes are staged: {', '.join(unexpected)}"
            raise RepositoryStateError(msg)

        had_head = self.head() is not None
        try:
            self._facade.run(["git", "add", "-A", "--", *files])
            if not self._staged_paths(files):
                self._unstage(files, had_head=had_head)
                msg = "No changes to commit"
                raise RepositoryStateError(msg)
            self._facade.run(["git", "commit", "-q", "-m", message])
        except GitCommandError as exc:
            self._unstage(files, had_head=had_head)
            self._logger.error("commit failed", files=list(files), detail=exc.detail)
            msg = f"Commit not applied: {exc.detail or exc}"
            raise RepositoryStateError(msg) from exc
        sha = self.head() or ""
        self._logger.info("committed scenario files", sha=sha, files=list(files))
        return sha

    def diff_between(self, ref_a: str, ref_b: str) -> list[ChangedFile]:
        """Return the files that differ between two refs."""
        result = self._facade.run(["git", "diff", "--name-status", "-z", ref_a, ref_b])
        return parse_name_status(result.stdout)

    def read_file_at_ref(self, path: str, ref: str) -> bytes | None:
        """Return the raw content of ``path`` at ``ref``, or None when it does not exist there.

        Content is not decoded so that encoding problems reach the corruption guard.
        """
        exists = self._facade.run(["git", "cat-file", "-e", f"{ref}:{path}"], check=False)
        if exists.returncode != 0:
            return None
        return self._facade.run(["git", "show", f"{ref}:{path}"], text=False).stdout

    def read_snapshot_documents(
        self,
        scenario_id: str,
        ref: str | None,
    ) -> dict[EntityType, bytes | None]:
        """Return every bundle document of ``scenario_id`` at ``ref``.

        ``ref=None`` reads the working tree. Missing files map to None.
        """
        base = self.path / self._settings.scenarios_dir / scenario_id
        documents: dict[EntityType, bytes | None] = {}
        for entity_type in self._registry.entity_types:
            file_name = self._registry.file_name(entity_type)
            if ref is None:
                target = base / file_name
                documents[entity_type] = target.read_bytes() if target.is_file() else None
            else:
                relative = f"{self._settings.scenarios_dir}/{scenario_id}/{file_name}"
                documents[entity_type] = self.read_file_at_ref(relative, ref)
        return documents

    def merge_base(self, ref_a: str, ref_b: str) -> str | None:
        """Return the best common ancestor of two refs, or None for unrelated histories."""
        result = self._facade.run(["git", "merge-base", ref_a, ref_b], check=False)
        sha = result.stdout.strip()
        return sha if result.returncode == 0 and sha else None

    def has_remote(self) -> bool:
        """Return True when the configured remote exists."""
        result = self._facade.run(["git", "remote"])
        return self._settings.remote in result.stdout.split()

    def pull(self) -> PullResult:
        """Fetch the configured remote branch and report how the local branch relates to it.

        The working tree is not touched; merging is a separate, explicit step.
        """
        self._require_remote("pull")
        refspec = f"+refs/heads/{self._settings.branch}:{self.remote_ref}"
        try:
            self._with_retry(
                "pull",
                lambda: self._facade.fetch(
                    self._settings.remote, [refspec], timeout=self._transport.timeout_sec,
                ),
            )
        except SyncError as exc:
            if _MISSING_REMOTE_REF in exc.detail.lower():
                self._logger.info("remote branch does not exist yet", ref=self.remote_ref)
                return PullResult(remote_ref=self.remote_ref, remote_sha=None)
            raise
        remote_sha = self.rev_parse(self.remote_ref)
        if remote_sha is None:
            ahead, behind = 0, 0
        elif self.head() is None:
            ahead, behind = 0, 1
        else:
            ahead, behind = self._ahead_behind(self.remote_ref)
        self._logger.info("fetched remote branch", ref=self.remote_ref, ahead=ahead, behind=behind)
        return PullResult(remote_ref=self.remote_ref, remote_sha=remote_sha, ahead=ahead, behind=behind)

    def fast_forward(self, ref: str) -> None:
        """Move the current branch forward to ``ref``; fails if history diverged."""
        self._facade.run(["git", "merge", "--ff-only", "-q", ref])

    def push(self) -> None:
        """Push the current branch to the configured remote branch; never forces."""
        self._require_remote("push")
        refspec = f"HEAD:refs/heads/{self._settings.branch}"
        self._with_retry(
            "push",
            lambda: self._facade.push(
                self._settings.remote, [refspec], timeout=self._transport.timeout_sec,
            ),
        )
        self._logger.info("pushed scenario branch", remote=self._settings.remote, branch=self._settings.branch)

    def begin_merge(self, ref: str) -> None:
        """Start a merge with ``ref`` without committing it.

        Textual conflicts are settled in favour of the local side; scenario
        bundles are rewritten with the entity level merge result afterwards.
        """
        self._facade.run(["git", "merge", "--no-ff", "--no-commit", "-X", "ours", ref], check=False)
        if self.rev_parse("MERGE_HEAD") is None:
            msg = f"Unable to start a merge with {ref}"
            raise RepositoryStateError(msg)

    def commit_merge(self, message: str, files: Sequence[str]) -> str:
        """Stage ``files`` and conclude the merge started by :meth:`begin_merge`."""
        try:
            self._facade.run(["git", "add", "-A", "--", *files])
            self._facade.run(["git", "commit", "-q", "-m", message])
        except GitCommandError as exc:
            self.abort_merge()
            msg = f"Merge commit not applied: {exc.detail or exc}"
            raise RepositoryStateError(msg) from exc
        return self.head() or ""

    def abort_merge(self) -> None:
        """Abort an in-progress merge if there is one."""
        self._facade.run(["git", "merge", "--abort"], check=False)

    def _with_retry(self, operation: str, action: Callable[[], _T]) -> _T:
        attempts = self._transport.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return action()
            except GitCommandError as exc:
                kind = classify_failure(exc)
                if not is_retryable(kind) or attempt == attempts:
                    self._logger.error(
                        "remote operation failed",
                        operation=operation,
                        kind=kind.value,
                        attempts=attempt,
                    )
                    raise to_sync_error(operation, exc, attempts=attempt) from exc
                delay = self._transport.delay_for(attempt)
                self._logger.warning(
                    "remote operation failed; retrying",
                    operation=operation,
                    kind=kind.value,
                    attempt=attempt,
                    delay=delay,
                )
                self._sleep(delay)
        msg = "retry loop exited without a result"
        raise AssertionError(msg)

    def _require_remote(self, operation: str) -> None:
        if not self.has_remote():
            raise SyncError(
                operation,
                SyncFailureKind.unknown,
                f"no remote named {self._settings.remote!r} is configured",
            )

    def _ahead_behind(self, ref: str) -> tuple[int, int]:
        result = self._facade.run(["git", "rev-list", "--left-right", "--count", f"HEAD...{ref}"])
        left, _, right = result.stdout.strip().partition("\t")
        return int(left or 0), int(right or 0)

    def _staged_paths(self, paths: Sequence[str] | None = None) -> list[str]:
        command = ["git", "diff", "--cached", "--name-only", "-z"]
        if paths:
            command.extend(["--", *paths])
        result = self._facade.run(command)
        return [path for path in result.stdout.split("\0") if path]

    def _unstage(self, files: Sequence[str], *, had_head: bool) -> None:
        if had_head:
            self._facade.run(["git", "reset", "-q", "--", *files], check=False)
        else:
            self._facade.run(["git", "rm", "--cached", "-r", "-q", "--ignore-unmatch", "--", *files], check=False)


__all__ = ["PullResult", "ScenarioRepository"]
