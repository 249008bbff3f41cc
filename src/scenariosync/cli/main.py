"""CLI entry point for scenariosync built with Typer."""

from __future__ import annotations

import json
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, NoReturn, TypeVar

import typer

from scenariosync.actions.sync import finalize_merge, open_merge_session, publish_scenario
from scenariosync.cli.runtime import (
    LOCKS,
    WorkflowContext,
    build_workflow_context,
    load_cli_config,
    load_entities_file,
    load_resolutions_file,
    read_directory_documents,
)
from scenariosync.core.errors import IncompleteMergeError, ScenarioSyncError, SyncError
from scenariosync.core.store import InMemoryEntityStore
from scenariosync.git.facade import GitCommandError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from scenariosync.core.models import Conflict, OverAllocationWarning, Resolution, ResolutionOutcome


_T = TypeVar("_T")

app = typer.Typer(add_completion=False, no_args_is_help=True)

EXIT_DATA = 1
EXIT_CONFIG = 2
EXIT_TRANSPORT = 3


def _resolve_repo(repo: Path | None) -> Path:
    return repo.resolve() if repo is not None else Path.cwd()


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False))


def _fail(payload: dict[str, Any], *, code: int, json_output: bool) -> NoReturn:
    if json_output:
        _emit_json(payload)
    else:
        typer.echo(f"error: {payload.get('message', payload.get('error'))}", err=True)
    raise typer.Exit(code=code)


@contextmanager
def _reporting_errors(*, json_output: bool) -> Iterator[None]:
    """Translate scenariosync failures into exit codes."""
    try:
        yield
    except SyncError as exc:
        _fail(exc.to_dict(), code=EXIT_TRANSPORT, json_output=json_output)
    except ScenarioSyncError as exc:
        _fail(exc.to_dict(), code=EXIT_DATA, json_output=json_output)
    except GitCommandError as exc:
        payload = {"error": type(exc).__name__, "message": exc.detail or str(exc)}
        _fail(payload, code=EXIT_DATA, json_output=json_output)


def _prepare_context(
    repo: Path | None,
    config_path: Path | None,
    *,
    json_logs: bool,
    silence_logs: bool,
) -> WorkflowContext:
    repo_path = _resolve_repo(repo)
    try:
        config = load_cli_config(config_path)
    except FileNotFoundError as exc:
        typer.echo(f"Configuration file not found: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from exc
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=EXIT_CONFIG) from exc

    return build_workflow_context(
        repo_path,
        config,
        json_logs=json_logs,
        silence_logs=silence_logs,
    )


def _load_input(loader: Callable[[Path], _T], path: Path) -> _T:
    try:
        return loader(path)
    except OSError as exc:
        typer.echo(f"Unable to read {path}: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from exc
    except ValueError as exc:
        typer.echo(f"Invalid input file {path}: {exc}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from exc


def _conflict_payload(conflict: Conflict) -> dict[str, Any]:
    return conflict.model_dump(mode="json")


def _warning_payload(warning: OverAllocationWarning) -> dict[str, Any]:
    payload = warning.model_dump(mode="json")
    payload["message"] = warning.message
    return payload


def _outcome_payload(outcome: ResolutionOutcome) -> dict[str, Any]:
    payload = outcome.model_dump(mode="json")
    payload["warnings"] = [_warning_payload(warning) for warning in outcome.warnings]
    return payload


@app.callback()
def cli_root() -> None:
    """Top-level CLI group for scenariosync."""


RepoOption = Annotated[Path | None, typer.Option(help="Path to the repository.")]
ConfigOption = Annotated[Path | None, typer.Option(help="Path to a configuration TOML.")]
ScenarioOption = Annotated[str, typer.Option("--scenario", help="Scenario identifier.")]
JsonFlag = Annotated[
    bool,
    typer.Option("--json", "--json-output", help="Emit JSON instead of text."),
]
PushFlag = Annotated[bool, typer.Option(help="Push the branch after committing.")]
FetchFlag = Annotated[bool, typer.Option(help="Fetch the remote branch before diffing.")]


@app.command("validate")
def validate_command(
    directory: Annotated[Path, typer.Argument(help="Directory holding the scenario bundles.")],
    scenario: Annotated[str | None, typer.Option(help="Expected scenario identifier.")] = None,
    config: ConfigOption = None,
    json_output: JsonFlag = False,
) -> None:
    """Run the corruption and compatibility checks on a scenario directory."""
    context = _prepare_context(directory, config, json_logs=json_output, silence_logs=json_output)
    if not context.repo_path.is_dir():
        typer.echo(f"Not a directory: {context.repo_path}", err=True)
        raise typer.Exit(code=EXIT_CONFIG)

    with _reporting_errors(json_output=json_output):
        documents = _load_input(lambda path: read_directory_documents(path, context.registry), context.repo_path)
        report = context.guard.load_snapshot("working", documents, scenario_id=scenario)

    if json_output:
        _emit_json(
            {
                "directory": str(context.repo_path),
                "ok": report.ok,
                "records": report.snapshot.count(),
                "invalid_records": [issue.model_dump(mode="json") for issue in report.invalid_records],
                "dangling_references": [
                    violation.model_dump(mode="json") for violation in report.dangling_references
                ],
                "recovered_files": list(report.recovered_files),
            },
        )
    else:
        lines = [f"Directory: {context.repo_path}", f"Records: {report.snapshot.count()}"]
        for issue in report.invalid_records:
            label = issue.entity_id or f"record {issue.index}"
            details = "; ".join(str(error) for error in issue.errors)
            lines.append(f"  invalid {issue.entity_type.value} {label}: {details}")
        lines.extend(
            f"  dangling {violation.entity_type.value} {violation.entity_id}.{violation.field}"
            f" -> {violation.target_type.value} {violation.missing_id}"
            for violation in report.dangling_references
        )
        lines.extend(f"  recovered {name}" for name in report.recovered_files)
        lines.append("OK" if report.ok else "FAILED")
        typer.echo("\n".join(lines))

    if not report.ok:
        raise typer.Exit(code=EXIT_DATA)


@app.command("export")
def export_command(
    scenario: ScenarioOption,
    input_path: Annotated[
        Path,
        typer.Option("--input", help="JSON object mapping entity types to record lists."),
    ],
    repo: RepoOption = None,
    config: ConfigOption = None,
    commit: Annotated[bool, typer.Option(help="Commit the written bundles.")] = False,
    push: PushFlag = False,
    json_output: JsonFlag = False,
) -> None:
    """Export records into scenario bundles inside the repository."""
    context = _prepare_context(repo, config, json_logs=json_output, silence_logs=json_output)
    entities = _load_input(load_entities_file, input_path)
    scenarios_dir = context.config.repository.scenarios_dir

    with _reporting_errors(json_output=json_output):
        if commit or push:
            store = InMemoryEntityStore({scenario: entities})
            result = publish_scenario(
                context.repository, context.exporter, store, scenario, context.logger, push=push,
            )
            files = list(result.files)
            sha, pushed = result.commit_sha, result.pushed
        else:
            files = context.exporter.write_snapshot(
                context.repo_path, scenario, entities, scenarios_dir=scenarios_dir,
            )
            sha, pushed = None, False

    if json_output:
        _emit_json(
            {
                "repository": str(context.repo_path),
                "scenario_id": scenario,
                "files": files,
                "commit": sha,
                "pushed": pushed,
            },
        )
        return

    lines = [f"Scenario: {scenario}", "Files:"]
    lines.extend(f"  - {name}" for name in files)
    if sha is not None:
        lines.append(f"Commit: {sha}")
    if pushed:
        lines.append("Pushed to remote.")
    typer.echo("\n".join(lines))


@app.command("diff")
def diff_command(
    scenario: ScenarioOption,
    repo: RepoOption = None,
    config: ConfigOption = None,
    fetch: FetchFlag = True,
    json_output: JsonFlag = False,
) -> None:
    """List the conflicts between the local and remote versions of a scenario."""
    context = _prepare_context(repo, config, json_logs=json_output, silence_logs=json_output)

    with _reporting_errors(json_output=json_output):
        merge = open_merge_session(
            context.repository,
            context.guard,
            scenario,
            context.logger,
            policy=context.config.merge,
            fetch=fetch,
        )
        session = merge.session
        conflicts = list(session.conflicts)
        warnings = session.warnings()
        session.abandon()

    if json_output:
        _emit_json(
            {
                "repository": str(context.repo_path),
                "scenario_id": scenario,
                "base": merge.base_sha,
                "remote": merge.pull.remote_sha,
                "ahead": merge.pull.ahead,
                "behind": merge.pull.behind,
                "conflicts": [_conflict_payload(conflict) for conflict in conflicts],
                "warnings": [_warning_payload(warning) for warning in warnings],
            },
        )
        return

    lines = [
        f"Scenario: {scenario}",
        f"Remote: {merge.pull.remote_sha or 'none'} (ahead={merge.pull.ahead}, behind={merge.pull.behind})",
        f"Conflicts: {len(conflicts)}",
    ]
    for conflict in conflicts:
        lines.append(f"  {conflict.id} [{conflict.kind.value}] {conflict.entity_name}")
        lines.append(f"     local: {json.dumps(conflict.local_value, ensure_ascii=False)}")
        lines.append(f"     remote: {json.dumps(conflict.remote_value, ensure_ascii=False)}")
    lines.extend(f"Warning: {warning.message}" for warning in warnings)
    typer.echo("\n".join(lines))


@app.command("merge")
def merge_command(
    scenario: Annotated[
        list[str],
        typer.Option(
            "--scenario",
            help="Scenario identifier; repeat to merge scenarios that conflict together.",
        ),
    ],
    resolutions: Annotated[
        Path | None,
        typer.Option(
            help="JSON list of resolutions keyed by conflict id, or an object mapping scenarios to such lists.",
        ),
    ] = None,
    repo: RepoOption = None,
    config: ConfigOption = None,
    acknowledge_warnings: Annotated[
        bool,
        typer.Option(help="Apply resolutions even when they over-allocate someone."),
    ] = False,
    defer_unresolved: Annotated[
        bool,
        typer.Option(help="Defer conflicts without a resolution instead of failing."),
    ] = False,
    allow_dangling: Annotated[
        bool,
        typer.Option(help="Commit even if the merged state has dangling references."),
    ] = False,
    fetch: FetchFlag = True,
    push: PushFlag = False,
    json_output: JsonFlag = False,
) -> None:
    """Merge the remote version of one or more scenarios, applying the given resolutions."""
    scenarios = list(dict.fromkeys(scenario))
    context = _prepare_context(repo, config, json_logs=json_output, silence_logs=json_output)
    chosen: dict[str, list[Resolution]] = {}
    if resolutions is not None:
        chosen = _load_input(lambda path: load_resolutions_file(path, scenarios), resolutions)

    outcomes: list[ResolutionOutcome] = []
    with _reporting_errors(json_output=json_output), ExitStack() as held:
        for scenario_id in scenarios:
            held.enter_context(LOCKS.hold(scenario_id))
        merges = [
            open_merge_session(
                context.repository,
                context.guard,
                scenario_id,
                context.logger,
                policy=context.config.merge,
                fetch=fetch and index == 0,
            )
            for index, scenario_id in enumerate(scenarios)
        ]
        pending: list[tuple[str, Conflict]] = []
        for merge in merges:
            session = merge.session
            for resolution in chosen.get(session.scenario_id, []):
                outcomes.append(
                    session.resolve(
                        resolution.conflict_id, resolution, acknowledge_warnings=acknowledge_warnings,
                    ),
                )
            if defer_unresolved:
                for conflict in session.pending():
                    session.defer(conflict.id)
            pending.extend((session.scenario_id, conflict) for conflict in session.pending())

        if pending:
            for merge in merges:
                merge.session.abandon()
            payload = IncompleteMergeError([conflict.id for _, conflict in pending]).to_dict()
            payload["outcomes"] = [_outcome_payload(outcome) for outcome in outcomes]
            payload["conflicts"] = [
                {**_conflict_payload(conflict), "scenario_id": scenario_id} for scenario_id, conflict in pending
            ]
            if not json_output:
                for outcome in outcomes:
                    if outcome.error:
                        typer.echo(f"{outcome.conflict_id}: {outcome.error}", err=True)
                    for warning in outcome.warnings:
                        typer.echo(f"{outcome.conflict_id}: {warning.message}", err=True)
            _fail(payload, code=EXIT_DATA, json_output=json_output)

        result = finalize_merge(
            context.repository,
            context.exporter,
            merges[0],
            context.logger,
            push=push,
            allow_dangling_references=allow_dangling,
            companions=merges[1:],
        )

    reports = [result.commit, *result.companions]
    if json_output:
        _emit_json(
            {
                "repository": str(context.repo_path),
                "scenario_id": scenarios[0],
                "commit": result.commit_sha,
                "merged_remote": result.merged_remote,
                "pushed": result.pushed,
                "records": result.commit.record_count,
                "resolved": list(result.commit.resolved),
                "deferred": list(result.commit.deferred),
                "outcomes": [_outcome_payload(outcome) for outcome in outcomes],
                "warnings": [_warning_payload(warning) for warning in result.commit.warnings],
                "scenarios": [
                    {
                        "scenario_id": report.scenario_id,
                        "records": report.record_count,
                        "resolved": list(report.resolved),
                        "deferred": list(report.deferred),
                    }
                    for report in reports
                ],
                "auto_merged": list(result.auto_merged),
            },
        )
        return

    lines = [f"Commit: {result.commit_sha or 'none'}"]
    for report in reports:
        lines.append(
            f"Scenario: {report.scenario_id} "
            f"(resolved: {len(report.resolved)}, deferred: {len(report.deferred)})",
        )
        lines.extend(f"Warning: {warning.message}" for warning in report.warnings)
    lines.extend(f"Scenario: {scenario_id} (merged automatically)" for scenario_id in result.auto_merged)
    if result.pushed:
        lines.append("Pushed to remote.")
    typer.echo("\n".join(lines))


def main(argv: Sequence[str] | None = None) -> int:
    """Execute the scenariosync CLI and return the exit status."""
    command = typer.main.get_command(app)
    try:
        status = command.main(args=list(argv or []), prog_name="scenariosync", standalone_mode=False)
    except SystemExit as exc:  # pragma: no cover - Typer propagates exit codes via SystemExit
        return int(exc.code or 0)
    # typer.Exit is returned rather than raised when standalone mode is off
    return status if isinstance(status, int) else 0


if __name__ == "__main__":  # pragma: no cover - CLI invocation
    raise SystemExit(main())
