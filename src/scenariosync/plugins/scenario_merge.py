"""Git merge driver for scenario bundle files.

Register it with::

    git config merge.scenariosync.driver "scenariosync-merge-driver %O %A %B %P"

and mark bundles in ``.gitattributes`` (``scenarios/**/*.json merge=scenariosync``).
A bundle is merged record by record; the driver only succeeds when no
conflict needs a human decision, leaving anything else to the merge session.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from scenariosync.core.diff import three_way_merge
from scenariosync.core.errors import CorruptionError, ValidationError
from scenariosync.core.exporter import EntityExporter
from scenariosync.core.guard import CorruptionGuard
from scenariosync.core.models import EntityType, Snapshot
from scenariosync.core.registry import DEFAULT_REGISTRY

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scenariosync.core.models import ScenarioExport
    from scenariosync.core.registry import SchemaRegistry


class MergeError(RuntimeError):
    """Raised when a bundle merge cannot be completed cleanly."""


@dataclass(slots=True)
class MergeInputs:
    """Container for merge driver file paths."""

    base: Path
    current: Path
    other: Path
    pathname: str | None = None


def merge_bundle_files(inputs: MergeInputs, registry: SchemaRegistry = DEFAULT_REGISTRY) -> bool:
    """Merge three versions of a bundle, updating ``inputs.current`` on success.

    Returns False, leaving ``inputs.current`` untouched, when conflicts remain.
    """
    _ensure_safe_path(inputs.current, "current")
    _ensure_safe_path(inputs.base, "base", allow_missing=True)
    _ensure_safe_path(inputs.other, "other", allow_missing=True)
    entity_type = _entity_type(inputs, registry)

    guard = CorruptionGuard(registry)
    current = _load_bundle(guard, "local", entity_type, inputs.current)
    if current is None:
        message = f"missing current document: {inputs.current}"
        raise MergeError(message)
    base = _load_bundle(guard, "base", entity_type, inputs.base)
    other = _load_bundle(guard, "remote", entity_type, inputs.other)
    if other is not None and other.scenario_id != current.scenario_id:
        message = f"bundles belong to different scenarios: {current.scenario_id}, {other.scenario_id}"
        raise MergeError(message)

    result = three_way_merge(
        _snapshot("base", entity_type, base),
        _snapshot("local", entity_type, current),
        _snapshot("remote", entity_type, other),
        registry=registry,
    )
    if not result.clean:
        return False

    exporter = EntityExporter(registry, exported_by=current.exported_by)
    try:
        merged = exporter.export(current.scenario_id, entity_type, result.merged.records(entity_type))
    except ValidationError as exc:
        message = f"merged bundle is invalid: {exc}"
        raise MergeError(message) from exc
    inputs.current.write_text(exporter.to_json(merged), encoding="utf-8")
    return True


def run(argv: Sequence[str] | None = None) -> int:
    """Entry point for the git merge driver."""
    parser = argparse.ArgumentParser(description="scenariosync bundle merge driver")
    parser.add_argument("base", help="Path to the common ancestor file")
    parser.add_argument("current", help="Path to the current branch file")
    parser.add_argument("other", help="Path to the other branch file")
    parser.add_argument("pathname", nargs="?", help="Repository path of the merged file")
    args = parser.parse_args(list(argv) if argv is not None else None)

    inputs = MergeInputs(Path(args.base), Path(args.current), Path(args.other), args.pathname)
    try:
        success = merge_bundle_files(inputs)
    except MergeError:
        return 1
    return 0 if success else 1


def _entity_type(inputs: MergeInputs, registry: SchemaRegistry) -> EntityType:
    name = Path(inputs.pathname).name if inputs.pathname else inputs.current.name
    entity_type = registry.entity_type_for_file(name)
    if entity_type is None:
        message = f"not a scenario bundle: {name}"
        raise MergeError(message)
    return entity_type


def _load_bundle(
    guard: CorruptionGuard,
    snapshot: str,
    entity_type: EntityType,
    path: Path,
) -> ScenarioExport | None:
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    # git hands over an empty file when the ancestor did not have the path
    if not text.strip():
        return None
    try:
        bundle, _ = guard.parse_document(snapshot, entity_type, text)
    except CorruptionError as exc:
        raise MergeError(str(exc)) from exc
    report = guard.check_snapshot(
        Snapshot(name=snapshot, entities={entity_type: [dict(record) for record in bundle.data]}),
    )
    if report.invalid_records:
        indexes = ", ".join(str(issue.index) for issue in report.invalid_records)
        message = f"invalid records in {snapshot} bundle at {indexes}"
        raise MergeError(message)
    return bundle


def _snapshot(name: str, entity_type: EntityType, bundle: ScenarioExport | None) -> Snapshot:
    if bundle is None:
        return Snapshot(name=name)
    return Snapshot(name=name, entities={entity_type: [dict(record) for record in bundle.data]})


def _ensure_safe_path(path: Path, role: str, *, allow_missing: bool = False) -> None:
    if path.is_symlink():
        message = f"refusing to use symlinked {role} document: {path}"
        raise MergeError(message)
    resolved = path.resolve()
    cwd = Path.cwd()
    if not resolved.is_relative_to(cwd):
        message = f"{role} document outside working tree: {path}"
        raise MergeError(message)
    if not path.exists():
        if allow_missing:
            return
        message = f"missing {role} document: {path}"
        raise MergeError(message)


__all__ = ["MergeError", "MergeInputs", "merge_bundle_files", "run"]


if __name__ == "__main__":  # pragma: no cover - CLI
    raise SystemExit(run())
