"""Parsing utilities for git plumbing output and scenario file paths."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from scenariosync.core.models import EntityType
from scenariosync.core.registry import DEFAULT_REGISTRY, SchemaRegistry


LOGGER = logging.getLogger(__name__)

_STATUS_NAMES = {
    "A": "added",
    "C": "copied",
    "D": "deleted",
    "M": "modified",
    "R": "renamed",
    "T": "type_changed",
    "U": "unmerged",
}


@dataclass(frozen=True, slots=True)
class ChangedFile:
    """One path reported by ``git diff --name-status``."""

    status: str
    path: str
    previous_path: str | None = None


@dataclass(frozen=True, slots=True)
class ScenarioPath:
    """A bundle file located inside the scenarios directory."""

    scenario_id: str
    entity_type: EntityType
    path: str


def parse_name_status(output: str) -> list[ChangedFile]:
    """Parse NUL separated ``git diff --name-status -z`` output."""
    tokens = output.split("\0")
    if tokens and tokens[-1] == "":
        tokens.pop()
    changes: list[ChangedFile] = []
    index = 0
    while index < len(tokens):
        code = tokens[index]
        letter = code[:1]
        status = _STATUS_NAMES.get(letter)
        if status is None:
            LOGGER.warning("Skipping unknown name-status code %r", code)
            index += 1
            continue
        if letter in {"R", "C"}:
            if index + 2 >= len(tokens):
                LOGGER.warning("Truncated rename entry in name-status output")
                break
            changes.append(ChangedFile(status, tokens[index + 2], tokens[index + 1]))
            index += 3
            continue
        if index + 1 >= len(tokens):
            LOGGER.warning("Truncated name-status output after code %r", code)
            break
        changes.append(ChangedFile(status, tokens[index + 1]))
        index += 2
    return changes


def parse_porcelain_paths(output: str) -> list[str]:
    """Return the paths listed by ``git status --porcelain -z``."""
    paths: list[str] = []
    entries = output.split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        paths.append(path)
        if "R" in code or "C" in code:
            # the pre-rename path follows as its own entry
            index += 1
    return paths


def parse_scenario_path(
    path: str,
    *,
    scenarios_dir: str = "scenarios",
    registry: SchemaRegistry = DEFAULT_REGISTRY,
) -> ScenarioPath | None:
    """Return the scenario and entity type encoded in ``path`` if it is a bundle file."""
    parts = PurePosixPath(path).parts
    root = PurePosixPath(scenarios_dir).parts
    if len(parts) != len(root) + 2 or parts[: len(root)] != root:
        return None
    scenario_id, file_name = parts[len(root)], parts[len(root) + 1]
    entity_type = registry.entity_type_for_file(file_name)
    if entity_type is None:
        return None
    return ScenarioPath(scenario_id=scenario_id, entity_type=entity_type, path=path)


def changed_scenarios(
    changes: list[ChangedFile],
    *,
    scenarios_dir: str = "scenarios",
) -> dict[str, set[EntityType]]:
    """Group changed bundle files by scenario."""
    grouped: dict[str, set[EntityType]] = {}
    for change in changes:
        for candidate in (change.path, change.previous_path):
            if candidate is None:
                continue
            located = parse_scenario_path(candidate, scenarios_dir=scenarios_dir)
            if located is not None:
                grouped.setdefault(located.scenario_id, set()).add(located.entity_type)
    return grouped


__all__ = [
    "ChangedFile",
    "ScenarioPath",
    "changed_scenarios",
    "parse_name_status",
    "parse_porcelain_paths",
    "parse_scenario_path",
]
