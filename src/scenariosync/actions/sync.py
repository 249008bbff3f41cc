"""End-to-end scenario flows: publish local data, open a merge, finalise it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from scenariosync.actions.safety import create_backup_ref, require_clean_worktree, restore_backup_ref
from scenariosync.core.diff import three_way_merge
from scenariosync.core.errors import RepositoryStateError, ScenarioSyncError, UnmergedScenariosError
from scenariosync.core.guard import CorruptionGuard
from scenariosync.core.models import EntityType, MergePolicy, Snapshot
from scenariosync.core.resolver import ConflictResolver
from scenariosync.core.session import MergeSession
from scenariosync.core.store import DirectoryEntityStore
from scenariosync.git.facade import GitCommandError
from scenariosync.git.parse import changed_scenarios
from scenariosync.git.repository import PullResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scenariosync.core.exporter import EntityExporter
    from scenariosync.core.guard import SnapshotReport
    from scenariosync.core.session import CommitReport
    from scenariosync.core.store import EntityStore
    from scenariosync.git.repository import ScenarioRepository
    from scenariosync.io.logging import StructuredLogger


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Outcome of exporting a scenario and committing it."""

    scenario_id: str
    files: tuple[str, ...]
    commit_sha: str | None
    pushed: bool


@dataclass(slots=True)
class MergeContext:
    """A merge session together with the repository facts it was opened from."""

    session: MergeSession
    pull: PullResult
    base_sha: str | None
    reports: dict[str, SnapshotReport] = field(default_factory=dict)
    guard: CorruptionGuard | None = None
    policy: MergePolicy = field(default_factory=MergePolicy)


@dataclass(frozen=True, slots=True)
class FinalizeResult:
    """Outcome of writing a merged scenario back to the repository."""

    commit: CommitReport
    commit_sha: str | None
    merged_remote: bool
    pushed: bool
    backup_ref: str | None
    companions: tuple[CommitReport, ...] = ()
    auto_merged: tuple[str, ...] = ()


def publish_scenario(
    repository: ScenarioRepository,
    exporter: EntityExporter,
    store: EntityStore,
    scenario_id: str,
    logger: StructuredLogger,
    *,
    push: bool = False,
) -> PublishResult:
    """Export ``scenario_id`` from ``store``, commit the bundles and optionally push."""
    entities = store.read_entities(scenario_id)
    bundles = exporter.export_snapshot(scenario_id, entities)
    files = exporter.write_bundles(
        repository.path, scenario_id, bundles, scenarios_dir=repository.settings.scenarios_dir,
    )
    if not files or not repository.has_uncommitted_changes(files):
        logger.info("scenario unchanged; nothing to commit", scenario_id=scenario_id)
        return PublishResult(scenario_id=scenario_id, files=tuple(files), commit_sha=None, pushed=False)

    sha = repository.commit(exporter.commit_message(bundles), files)
    if push:
        repository.push()
    logger.info("published scenario", scenario_id=scenario_id, sha=sha, pushed=push)
    return PublishResult(scenario_id=scenario_id, files=tuple(files), commit_sha=sha, pushed=push)


def open_merge_session(
    repository: ScenarioRepository,
    guard: CorruptionGuard,
    scenario_id: str,
    logger: StructuredLogger,
    *,
    policy: MergePolicy | None = None,
    fetch: bool = True,
) -> MergeContext:
    """Load base, local and remote snapshots of ``scenario_id`` and open a merge session.

    The local snapshot is the committed ``HEAD`` state, so uncommitted bundle
    edits must be published first. Every snapshot passes the corruption guard
    before it is diffed.
    """
    policy = policy or MergePolicy()
    scenario_dir = f"{repository.settings.scenarios_dir}/{scenario_id}"
    if repository.has_uncommitted_changes([scenario_dir]):
        msg = f"Scenario {scenario_id} has uncommitted changes; publish them before merging"
        raise RepositoryStateError(msg)

    if fetch:
        pull = repository.pull()
    else:
        pull = PullResult(
            remote_ref=repository.remote_ref,
            remote_sha=repository.rev_parse(repository.remote_ref),
        )
    head = repository.head()
    base_sha = repository.merge_base("HEAD", pull.remote_ref) if head and pull.remote_sha else head

    empty: dict[EntityType, bytes | None] = dict.fromkeys(guard.registry.entity_types)
    refs = {
        "base": base_sha,
        "local": head,
        "remote": pull.remote_sha or head,
    }
    reports: dict[str, SnapshotReport] = {}
    snapshots: dict[str, Snapshot] = {}
    for name, ref in refs.items():
        documents = repository.read_snapshot_documents(scenario_id, ref) if ref else empty
        report = guard.load_snapshot(name, documents, scenario_id=scenario_id)
        reports[name] = report
        snapshots[name] = guard.enforce(report, policy.integrity_policy)

    resolver = ConflictResolver(guard.registry, allocation_threshold=policy.allocation_threshold)
    session = MergeSession(
        scenario_id,
        snapshots["base"],
        snapshots["local"],
        snapshots["remote"],
        registry=guard.registry,
        resolver=resolver,
        confirm_deletions=policy.confirm_deletions,
        logger=logger,
    )
    logger.info(
        "opened scenario merge",
        scenario_id=scenario_id,
        base=base_sha,
        remote=pull.remote_sha,
        conflicts=len(session.conflicts),
    )
    return MergeContext(
        session=session, pull=pull, base_sha=base_sha, reports=reports, guard=guard, policy=policy,
    )


def finalize_merge(
    repository: ScenarioRepository,
    exporter: EntityExporter,
    context: MergeContext,
    logger: StructuredLogger,
    *,
    push: bool = False,
    allow_dangling_references: bool = False,
    companions: Sequence[MergeContext] = (),
) -> FinalizeResult:
    """Write the merged state into the working copy and record it as a commit.

    Diverged histories are concluded with a two-parent merge commit so the next
    merge finds the right base. Other scenarios changed on both sides are
    merged entity by entity in the same commit: clean ones automatically,
    conflicting ones only through the sessions passed as ``companions``.
    Any failure resets the branch to a backup ref taken beforehand and leaves
    every session open so the merge can be retried.

    Raises:
        UnmergedScenariosError: if another scenario has conflicting changes on
            both sides and no companion session covers it.

    """
    contexts = [context, *companions]
    _check_companions(contexts)
    scenario_ids = [item.session.scenario_id for item in contexts]
    scenarios_dir = repository.settings.scenarios_dir
    require_clean_worktree(repository.facade, logger)
    backup_ref = create_backup_ref(repository.facade, logger)
    store = DirectoryEntityStore(repository.path / scenarios_dir, exporter)
    merged_remote = False
    auto_merged: dict[str, Snapshot] = {}
    try:
        if context.pull.diverged:
            auto_merged = _merge_other_scenarios(repository, context, set(scenario_ids), logger)
            repository.begin_merge(context.pull.remote_ref)
            merged_remote = True
            for scenario_id, merged in auto_merged.items():
                store.replace_entities(scenario_id, merged.entities)
        elif context.pull.behind > 0:
            repository.fast_forward(context.pull.remote_ref)
        reports = [
            item.session.write_merged_state(store, allow_dangling_references=allow_dangling_references)
            for item in contexts
        ]
        message = _merge_message(reports, sorted(auto_merged))
        paths = [f"{scenarios_dir}/{scenario_id}" for scenario_id in [*scenario_ids, *sorted(auto_merged)]]
        if merged_remote:
            sha: str | None = repository.commit_merge(message, paths)
        elif repository.has_uncommitted_changes(paths):
            sha = repository.commit(message, paths)
        else:
            sha = repository.head()
    except (ScenarioSyncError, GitCommandError, OSError) as exc:
        logger.error("finalising merge failed", scenarios=scenario_ids, error=str(exc))
        if backup_ref is not None:
            restore_backup_ref(repository.facade, logger, backup_ref, clean_paths=[scenarios_dir])
        raise

    for item in contexts:
        item.session.mark_committed()
    if push:
        repository.push()
    logger.info("finalised scenario merge", scenarios=scenario_ids, sha=sha, pushed=push)
    return FinalizeResult(
        commit=reports[0],
        commit_sha=sha,
        merged_remote=merged_remote,
        pushed=push,
        backup_ref=backup_ref,
        companions=tuple(reports[1:]),
        auto_merged=tuple(sorted(auto_merged)),
    )


def _check_companions(contexts: Sequence[MergeContext]) -> None:
    primary = contexts[0]
    seen: set[str] = set()
    for item in contexts:
        scenario_id = item.session.scenario_id
        if scenario_id in seen:
            msg = f"Scenario {scenario_id} is listed more than once"
            raise RepositoryStateError(msg)
        seen.add(scenario_id)
        if item.pull.remote_sha != primary.pull.remote_sha or item.base_sha != primary.base_sha:
            msg = f"Scenario {scenario_id} was opened against a different remote state"
            raise RepositoryStateError(msg)


def _merge_other_scenarios(
    repository: ScenarioRepository,
    context: MergeContext,
    covered: set[str],
    logger: StructuredLogger,
) -> dict[str, Snapshot]:
    """Entity-merge every uncovered scenario that changed on both sides.

    Returns the clean merges; nothing is written here.
    """
    base, remote = context.base_sha, context.pull.remote_sha
    if base is None or remote is None:
        return {}
    scenarios_dir = repository.settings.scenarios_dir
    local_changes = changed_scenarios(repository.diff_between(base, "HEAD"), scenarios_dir=scenarios_dir)
    remote_changes = changed_scenarios(repository.diff_between(base, remote), scenarios_dir=scenarios_dir)
    shared = sorted((set(local_changes) & set(remote_changes)) - covered)

    guard = context.guard or CorruptionGuard()
    policy = context.policy
    merged: dict[str, Snapshot] = {}
    blocked: list[str] = []
    for scenario_id in shared:
        snapshots = [
            guard.enforce(
                guard.load_snapshot(
                    name, repository.read_snapshot_documents(scenario_id, ref), scenario_id=scenario_id,
                ),
                policy.integrity_policy,
            )
            for name, ref in (("base", base), ("local", "HEAD"), ("remote", remote))
        ]
        result = three_way_merge(
            *snapshots, registry=guard.registry, confirm_deletions=policy.confirm_deletions,
        )
        if not result.clean:
            blocked.append(scenario_id)
            continue
        check = guard.check_snapshot(result.merged)
        if check.invalid_records or check.dangling_references:
            blocked.append(scenario_id)
            continue
        merged[scenario_id] = result.merged
    if blocked:
        logger.warning("other scenarios need resolutions", scenarios=blocked)
        raise UnmergedScenariosError(blocked)
    if merged:
        logger.info("auto-merged other scenarios", scenarios=sorted(merged))
    return merged


def _merge_message(reports: Sequence[CommitReport], auto_merged: Sequence[str]) -> str:
    parts = [
        f"{report.scenario_id} ({len(report.resolved)} resolved, {len(report.deferred)} deferred)"
        for report in reports
    ]
    parts.extend(f"{scenario_id} (auto)" for scenario_id in auto_merged)
    label = "scenario" if len(parts) == 1 else "scenarios"
    return f"Merge {label} {', '.join(parts)}"


__all__ = [
    "FinalizeResult",
    "MergeContext",
    "PublishResult",
    "finalize_merge",
    "open_merge_session",
    "publish_scenario",
]
