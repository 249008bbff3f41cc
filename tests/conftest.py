"""Shared fixtures for the scenariosync test suite."""
from __future__ import annotations
import io
import json
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

import pytest
from scenariosync.core.models import EntityType, Snapshot
from scenariosync.git.facade import CommandRecord, GitCommandError, GitFacade
from scenariosync.io.logging import StructuredLogger

TIMESTAMP = "2024-01-01T00:00:00Z"


def project(project_id: str = "p1", **overrides: Any) -> dict[str, Any]:
    """Return a valid project record."""
    record: dict[str, Any] = {
        "id": project_id,
        "name": f"Project {project_id}",
        "priority": 3,
        "status": "active",
        "aspirationStart": "2024-01-01",
        "aspirationFinish": "2024-12-31",
        "createdAt": TIMESTAMP,
        "updatedAt": TIMESTAMP,
    }
    record.update(overrides)
    return record


def person(person_id: str = "u1", **overrides: Any) -> dict[str, Any]:
    """Return a valid person record."""
    record: dict[str, Any] = {
        "id": person_id,
        "name": f"Person {person_id}",
        "email": f"{person_id}@example.com",
        "createdAt": TIMESTAMP,
        "updatedAt": TIMESTAMP,
    }
    record.update(overrides)
    return record


def assignment(
    assignment_id: str = "a1",
    *,
    person_id: str = "u1",
    project_id: str = "p1",
    allocation: float = 50,
    start: str = "2024-01-01",
    end: str = "2024-01-31",
    **overrides: Any,
) -> dict[str, Any]:
    """Return a valid assignment record."""
    record: dict[str, Any] = {
        "id": assignment_id,
        "personId": person_id,
        "projectId": project_id,
        "allocationPercentage": allocation,
        "startDate": start,
        "endDate": end,
        "createdAt": TIMESTAMP,
        "updatedAt": TIMESTAMP,
    }
    record.update(overrides)
    return record


def phase(
    phase_id: str = "ph1",
    *,
    project_id: str = "p1",
    start: str = "2024-02-01",
    end: str = "2024-03-31",
    **overrides: Any,
) -> dict[str, Any]:
    """Return a valid project phase record."""
    record: dict[str, Any] = {
        "id": phase_id,
        "projectId": project_id,
        "name": f"Phase {phase_id}",
        "startDate": start,
        "endDate": end,
        "createdAt": TIMESTAMP,
        "updatedAt": TIMESTAMP,
    }
    record.update(overrides)
    return record


def snapshot(name: str, **entities: list[dict[str, Any]]) -> Snapshot:
    """Build a snapshot from keyword arguments named after entity types."""
    return Snapshot(name=name, entities={EntityType(key): value for key, value in entities.items()})


def bundle_text(
    records: list[dict[str, Any]],
    *,
    scenario_id: str = "baseline",
    version: Any = "1.0.0",
    **envelope: Any,
) -> str:
    """Render a bundle document the way it is stored in the repository."""
    document: dict[str, Any] = {
        "schemaVersion": version,
        "exportedAt": "2024-05-01T10:00:00Z",
        "scenarioId": scenario_id,
        "data": records,
    }
    document.update(envelope)
    return json.dumps(document, indent=2)


@dataclass(frozen=True)
class GitResponse:
    """Represents a scripted response for a git command."""

    stdout: str | bytes = ""
    stderr: str = ""
    returncode: int = 0

class ScriptQueue:
    """Queue managing scripted git responses for :class:`FakeGitFacade`."""

    def __init__(self) -> None:
        """Initialise an empty script queue."""
        self._scripts: deque[dict[tuple[str, ...], deque[GitResponse]]] = deque()
    def push(self, script: dict[tuple[str, ...], list[GitResponse] | GitResponse]) -> None:
        """Append a new script that will be consumed by the next facade instance."""
        self._scripts.append(_prepare(script))
    def pop(self) -> dict[tuple[str, ...], deque[GitResponse]]:
        """Return the next script or an empty script when none are queued."""
        if not self._scripts:
            return {}
        return self._scripts.popleft()
    def clear(self) -> None:
        """Remove all queued scripts."""
        self._scripts.clear()


def _as_text(stream: str | bytes) -> str:
    return stream.decode("utf-8", errors="replace") if isinstance(stream, bytes) else stream


def _prepare(script: dict[tuple[str, ...], list[GitResponse] | GitResponse]) -> dict[tuple[str, ...], deque[GitResponse]]:
    prepared: dict[tuple[str, ...], deque[GitResponse]] = {}
    for command, responses in script.items():
        if isinstance(responses, list):
            prepared[command] = deque(responses)
        else:
            prepared[command] = deque([responses])
    return prepared


class FakeGitFacade:
    """Test double for :class:`scenariosync.git.facade.GitFacade`."""

    script_queue: ScriptQueue | None = None
    def __init__(
        self,
        *,
        repo_path: Path,
        logger: Any,
        env: dict[str, str] | None = None,
        script: dict[tuple[str, ...], list[GitResponse] | GitResponse] | None = None,
    ) -> None:
        """Initialise the facade with scripted responses."""
        self._repo_path = Path(repo_path)
        self._logger = logger
        self._env = dict(env or {})
        self._command_history: list[CommandRecord] = []
        self.timeouts: list[float | None] = []
        if script is not None:
            self._script = _prepare(script)
        else:
            self._script = self.script_queue.pop() if self.script_queue is not None else {}
    @property
    def repo_path(self) -> Path:
        """Return the repository root associated with the facade."""
        return self._repo_path
    @property
    def command_history(self) -> tuple[CommandRecord, ...]:
        """Return the recorded command history."""
        return tuple(self._command_history)
    @property
    def commands(self) -> list[tuple[str, ...]]:
        """Return the executed commands as tuples."""
        return [entry.command for entry in self._command_history]
    def run(
        self,
        args: Any,
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        check: bool = True,
        text: bool = True,
    ) -> subprocess.CompletedProcess[Any]:
        """Execute a git command using the scripted responses."""
        command = tuple(str(part) for part in args)
        working_dir = str(Path(cwd) if cwd is not None else self._repo_path)
        self.timeouts.append(timeout)
        response = self._resolve_response(command)
        stdout = response.stdout
        if not text and isinstance(stdout, str):
            stdout = stdout.encode("utf-8")
        completed = subprocess.CompletedProcess(
            command,
            response.returncode,
            stdout=stdout,
            stderr=response.stderr,
        )
        self._command_history.append(CommandRecord(command, working_dir, completed.returncode))
        if check and completed.returncode != 0:
            raise GitCommandError(command, completed.returncode, _as_text(response.stdout), completed.stderr or "")
        return completed
    def fetch(
        self,
        remote: str = "origin",
        refspecs: Any | None = None,
        *,
        prune: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Simulate `git fetch` for the provided remote."""
        command = ["git", "fetch"]
        if prune:
            command.append("--prune")
        command.append(remote)
        if refspecs:
            command.extend(str(spec) for spec in refspecs)
        return self.run(command, timeout=timeout)
    def push(
        self,
        remote: str = "origin",
        refspecs: Any | None = None,
        *,
        timeout: float | None = None,
        extra_args: Any | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Simulate `git push`."""
        command = ["git", "push"]
        if extra_args:
            command.extend(str(arg) for arg in extra_args)
        command.append(remote)
        if refspecs:
            command.extend(str(spec) for spec in refspecs)
        return self.run(command, timeout=timeout)
    def _resolve_response(self, command: tuple[str, ...]) -> GitResponse:
        """Retrieve the scripted response for ``command``."""
        if command not in self._script:
            message = f"Unexpected git command: {command}"
            raise AssertionError(message)
        responses = self._script[command]
        return responses.popleft() if len(responses) > 1 else responses[0]


@pytest.fixture
def configure_fake_git_facade(monkeypatch: pytest.MonkeyPatch) -> Iterator[ScriptQueue]:
    """Patch :class:`GitFacade` with a scripted fake for tests."""
    queue = ScriptQueue()
    FakeGitFacade.script_queue = queue
    monkeypatch.setattr("scenariosync.cli.runtime.GitFacade", FakeGitFacade)
    yield queue
    queue.clear()
    FakeGitFacade.script_queue = None


@pytest.fixture
def log_buffer() -> io.StringIO:
    """Return the stream the ``logger`` fixture writes to."""
    return io.StringIO()


@pytest.fixture
def logger(log_buffer: io.StringIO) -> StructuredLogger:
    """Return a structured logger writing into memory."""
    return StructuredLogger(name="test", stream=log_buffer)


@pytest.fixture
def git_env(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Isolate git from the user's configuration and pin the commit identity."""
    home = tmp_path_factory.mktemp("git-home")
    global_config = home / ".gitconfig"
    global_config.write_text(
        "[user]\n\tname = Scenario Tester\n\temail = tester@example.com\n[init]\n\tdefaultBranch = main\n",
        encoding="utf-8",
    )
    env = {
        "GIT_CONFIG_GLOBAL": str(global_config),
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_AUTHOR_NAME": "Scenario Tester",
        "GIT_AUTHOR_EMAIL": "tester@example.com",
        "GIT_COMMITTER_NAME": "Scenario Tester",
        "GIT_COMMITTER_EMAIL": "tester@example.com",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture
def bare_remote(tmp_path: Path, git_env: dict[str, str], logger: StructuredLogger) -> Path:
    """Create an empty bare repository to push to."""
    remote = tmp_path / "remote.git"
    remote.mkdir()
    facade = GitFacade(repo_path=remote, logger=logger)
    facade.run(["git", "init", "--bare", "-q", "."])
    facade.run(["git", "symbolic-ref", "HEAD", "refs/heads/main"])
    return remote


def clone_remote(remote: Path, target: Path, logger: StructuredLogger) -> GitFacade:
    """Clone ``remote`` into ``target`` and return a facade bound to the clone."""
    GitFacade(repo_path=target.parent, logger=logger).run(["git", "clone", "-q", str(remote), str(target)])
    return GitFacade(repo_path=target, logger=logger)


__all__ = [
    "FakeGitFacade",
    "GitResponse",
    "ScriptQueue",
    "assignment",
    "bundle_text",
    "clone_remote",
    "person",
    "phase",
    "project",
    "snapshot",
]
