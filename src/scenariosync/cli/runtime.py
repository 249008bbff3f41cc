"""Helpers shared across CLI commands for wiring the synchronisation stack."""

from __future__ import annotations

import io
import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from scenariosync.core.exporter import EntityExporter
from scenariosync.core.guard import CorruptionGuard
from scenariosync.core.models import EntityType, Resolution, SyncConfig
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry
from scenariosync.core.session import ScenarioLocks
from scenariosync.git.facade import GitFacade
from scenariosync.git.repository import ScenarioRepository
from scenariosync.io import StructuredLogger, load_config

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


LOCKS = ScenarioLocks()
"""Process wide scenario locks shared by every command."""


@dataclass(slots=True)
class WorkflowContext:
    """Container bundling CLI dependencies for one command invocation."""

    repo_path: Path
    config: SyncConfig
    logger: StructuredLogger
    facade: GitFacade
    repository: ScenarioRepository
    registry: SchemaRegistry
    guard: CorruptionGuard
    exporter: EntityExporter


def default_config() -> SyncConfig:
    """Return the default configuration used when no config file is provided."""
    return SyncConfig()


def load_cli_config(config_path: Path | None) -> SyncConfig:
    """Load configuration from ``config_path`` or fall back to defaults."""
    if config_path is None:
        return default_config()
    return load_config(path=config_path)


def build_logger(*, json_logs: bool, silence_logs: bool, verbose: bool = False) -> StructuredLogger:
    """Create the CLI logger; silenced logs are kept in memory."""
    stream = io.StringIO() if silence_logs else sys.stderr
    return StructuredLogger(
        name="scenariosync.cli",
        json_mode=json_logs,
        stream=stream,
        level="DEBUG" if verbose else "INFO",
    )


def build_workflow_context(
    repo_path: Path,
    config: SyncConfig,
    *,
    json_logs: bool,
    silence_logs: bool,
    verbose: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> WorkflowContext:
    """Assemble the context required by CLI commands."""
    logger = build_logger(json_logs=json_logs, silence_logs=silence_logs, verbose=verbose)
    registry = DEFAULT_REGISTRY
    facade = GitFacade(repo_path=repo_path, logger=logger)
    repository = ScenarioRepository(
        facade,
        logger,
        settings=config.repository,
        transport=config.transport,
        registry=registry,
        sleep=sleep,
    )
    guard = CorruptionGuard(registry, allow_recovery=config.merge.allow_json_recovery, logger=logger)
    exporter = EntityExporter(registry, exported_by=config.export.exported_by, logger=logger)
    return WorkflowContext(
        repo_path=repo_path,
        config=config,
        logger=logger,
        facade=facade,
        repository=repository,
        registry=registry,
        guard=guard,
        exporter=exporter,
    )


def load_entities_file(path: Path) -> dict[EntityType, list[dict[str, Any]]]:
    """Read a JSON object mapping entity type names to record lists."""
    document = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        msg = f"{path} must contain a JSON object keyed by entity type"
        raise ValueError(msg)
    entities: dict[EntityType, list[dict[str, Any]]] = {}
    for key, records in document.items():
        try:
            entity_type = EntityType(key)
        except ValueError:
            msg = f"unknown entity type {key!r} in {path}"
            raise ValueError(msg) from None
        if not isinstance(records, list):
            msg = f"records for {key!r} must be a list"
            raise ValueError(msg)
        entities[entity_type] = records
    return entities


def load_resolutions_file(path: Path, scenarios: Sequence[str]) -> dict[str, list[Resolution]]:
    """Read resolutions (``conflict_id``, ``strategy``, ``custom_value``) per scenario.

    A JSON list applies to the first scenario; a JSON object maps scenario
    ids to such lists.
    """
    document = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(document, list):
        document = {scenarios[0]: document}
    if not isinstance(document, dict):
        msg = f"{path} must contain a JSON list of resolutions or an object keyed by scenario"
        raise ValueError(msg)
    chosen: dict[str, list[Resolution]] = {}
    for scenario_id, entries in document.items():
        if scenario_id not in scenarios:
            msg = f"resolutions for scenario {scenario_id!r} which is not being merged"
            raise ValueError(msg)
        if not isinstance(entries, list):
            msg = f"resolutions for {scenario_id!r} must be a list"
            raise ValueError(msg)
        chosen[scenario_id] = [Resolution.model_validate(entry) for entry in entries]
    return chosen


def read_directory_documents(
    directory: Path,
    registry: SchemaRegistry = DEFAULT_REGISTRY,
) -> dict[EntityType, bytes | None]:
    """Return the bundle documents stored directly in ``directory``."""
    documents: dict[EntityType, bytes | None] = {}
    for entity_type in registry.entity_types:
        path = directory / registry.file_name(entity_type)
        documents[entity_type] = path.read_bytes() if path.is_file() else None
    return documents


__all__ = [
    "LOCKS",
    "WorkflowContext",
    "build_logger",
    "build_workflow_context",
    "default_config",
    "load_cli_config",
    "load_entities_file",
    "load_resolutions_file",
    "read_directory_documents",
]
