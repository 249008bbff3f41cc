"""Git related helpers for scenariosync."""

from scenariosync.git.errors import classify_failure, to_sync_error
from scenariosync.git.facade import GitCommandError, GitFacade, GitTimeoutError
from scenariosync.git.parse import (
    ChangedFile,
    ScenarioPath,
    changed_scenarios,
    parse_name_status,
    parse_scenario_path,
)
from scenariosync.git.repository import PullResult, ScenarioRepository

__all__ = [
    "ChangedFile",
    "GitCommandError",
    "GitFacade",
    "GitTimeoutError",
    "PullResult",
    "ScenarioPath",
    "ScenarioRepository",
    "changed_scenarios",
    "classify_failure",
    "parse_name_status",
    "parse_scenario_path",
    "to_sync_error",
]
