"""Git command execution facade."""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from scenariosync.io.logging import StructuredLogger


class GitCommandError(RuntimeError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        """Keep the command, its exit status and both output streams."""
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        subcommand = self.command[1] if len(self.command) > 1 else "git"
        summary = f"git {subcommand} exited with {returncode}"
        super().__init__(f"{summary}: {self.detail}" if self.detail else summary)

    @property
    def detail(self) -> str:
        """Return the last non-empty line git printed, preferring stderr."""
        for stream in (self.stderr, self.stdout):
            lines = [line.strip() for line in (stream or "").splitlines() if line.strip()]
            if lines:
                return lines[-1]
        return ""


class GitTimeoutError(GitCommandError):
    """Raised when a git command does not finish within its timeout."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        """Record the command and the exceeded timeout."""
        self.timeout = timeout
        super().__init__(command, -1, "", f"timed out after {timeout:g}s")


@dataclass(frozen=True, slots=True)
class CommandRecord:
    """One git invocation as seen by the facade."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    duration_ms: float = 0.0


class GitFacade:
    """Run git in one working copy with structured logging and timeouts."""

    def __init__(
        self,
        repo_path: Path,
        logger: StructuredLogger,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Bind the facade to ``repo_path``; ``env`` extends the inherited environment."""
        self._repo_path = Path(repo_path)
        self._logger = logger
        self._env = dict(env or {})
        self._history: list[CommandRecord] = []
        self._subprocess_run: Callable[..., subprocess.CompletedProcess[Any]] = subprocess.run

    @property
    def repo_path(self) -> Path:
        """Return the working copy root."""
        return self._repo_path

    @property
    def command_history(self) -> tuple[CommandRecord, ...]:
        """Return every command run so far, oldest first."""
        return tuple(self._history)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        check: bool = True,
        text: bool = True,
    ) -> subprocess.CompletedProcess[Any]:
        """Run ``args`` and return the completed process.

        With ``text`` disabled stdout is returned as raw bytes; stderr is
        still decoded for logging and error reporting.

        Raises:
            GitTimeoutError: if the command exceeds ``timeout`` seconds.
            GitCommandError: if the command fails and ``check`` is set.

        """
        command = tuple(str(part) for part in args)
        working_dir = str(Path(cwd) if cwd is not None else self._repo_path)
        self._logger.info("executing git command", command=list(command), cwd=working_dir)
        started = time.monotonic()
        try:
            completed = self._subprocess_run(
                command,
                cwd=working_dir,
                capture_output=True,
                text=text,
                timeout=timeout,
                check=False,
                env={**os.environ, **self._env} if self._env else None,
            )
        except subprocess.TimeoutExpired as exc:
            self._history.append(
                CommandRecord(command, working_dir, -1, duration_ms=_since(started)),
            )
            self._logger.warning("git command timed out", command=list(command), timeout=timeout)
            raise GitTimeoutError(command, float(timeout or exc.timeout)) from exc

        duration = _since(started)
        self._history.append(
            CommandRecord(command, working_dir, completed.returncode, duration_ms=duration),
        )
        stdout = _as_text(completed.stdout)
        stderr = _as_text(completed.stderr)
        output = {"stdout": stdout if text else f"<{len(completed.stdout or b'')} bytes>", "stderr": stderr}
        self._logger.debug(
            "git command finished",
            returncode=completed.returncode,
            duration_ms=duration,
            **{stream: value for stream, value in output.items() if value},
        )
        if check and completed.returncode != 0:
            raise GitCommandError(command, completed.returncode, stdout, stderr)
        return completed

    def fetch(
        self,
        remote: str = "origin",
        refspecs: Sequence[str] | None = None,
        *,
        prune: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Fetch ``refspecs`` from ``remote``, pruning stale tracking refs by default."""
        command = ["git", "fetch", *(["--prune"] if prune else []), remote, *(refspecs or [])]
        return self.run(command, timeout=timeout)

    def push(
        self,
        remote: str = "origin",
        refspecs: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
        extra_args: Sequence[str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Push ``refspecs`` to ``remote``; never forces."""
        command = ["git", "push", *(extra_args or []), remote, *(refspecs or [])]
        return self.run(command, timeout=timeout)


def _since(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 3)


def _as_text(stream: str | bytes | None) -> str:
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream or ""


__all__ = [
    "CommandRecord",
    "GitCommandError",
    "GitFacade",
    "GitTimeoutError",
]
