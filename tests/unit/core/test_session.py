from __future__ import annotations

import io
import threading

import pytest

from scenariosync.core.errors import (
    IncompleteMergeError,
    ReferentialIntegrityError,
    ResolutionStateError,
    SessionBusyError,
)
from scenariosync.core.models import ConflictStatus, EntityType, Resolution, ResolutionStrategy
from scenariosync.core.resolver import ConflictResolver
from scenariosync.core.session import MergeSession, ScenarioLocks
from scenariosync.core.store import InMemoryEntityStore
from scenariosync.io.logging import StructuredLogger
from tests.conftest import assignment, person, project, snapshot


def _session(**kwargs: object) -> MergeSession:
    base = snapshot(
        "base",
        project=[project("p1"), project("p2")],
        person=[person("u1")],
        assignment=[assignment("a1", allocation=50), assignment("a2", allocation=40)],
    )
    local = snapshot(
        "local",
        project=[project("p1", priority=1), project("p2", name="Local name")],
        person=[person("u1")],
        assignment=[assignment("a1", allocation=55), assignment("a2", allocation=40)],
    )
    remote = snapshot(
        "remote",
        project=[project("p1", priority=5), project("p2", status="on_hold")],
        person=[person("u1")],
        assignment=[assignment("a1", allocation=70), assignment("a2", allocation=40)],
    )
    logger = StructuredLogger(name="test", stream=io.StringIO())
    return MergeSession("baseline", base, local, remote, logger=logger, **kwargs)  # type: ignore[arg-type]


def _accept(conflict_id: str, strategy: ResolutionStrategy = ResolutionStrategy.accept_remote) -> Resolution:
    return Resolution(conflict_id=conflict_id, strategy=strategy)


def test_session_starts_with_every_conflict_pending() -> None:
    """Opening a session diffs the snapshots and auto-merges the rest."""
    session = _session()

    assert [conflict.id for conflict in session.conflicts] == [
        "project:p1:priority",
        "assignment:a1:allocationPercentage",
    ]
    assert all(session.status(conflict.id) is ConflictStatus.pending for conflict in session.conflicts)
    merged = session.merged_state().index(EntityType.project)["p2"]
    assert merged["name"] == "Local name"
    assert merged["status"] == "on_hold"
    assert session.is_open
    assert not session.is_complete


def test_resolve_updates_merged_state() -> None:
    """An applied resolution changes the merged state and the conflict status."""
    session = _session()

    outcome = session.resolve("project:p1:priority", _accept("project:p1:priority"))

    assert outcome.success and outcome.applied
    assert outcome.status is ConflictStatus.resolved
    assert session.merged_state().index(EntityType.project)["p1"]["priority"] == 5
    assert session.resolution_for("project:p1:priority") == _accept("project:p1:priority")
    assert [conflict.id for conflict in session.resolved()] == ["project:p1:priority"]


def test_resolved_conflict_cannot_be_resolved_again() -> None:
    """Resolution is terminal."""
    session = _session()
    session.resolve("project:p1:priority", _accept("project:p1:priority"))

    with pytest.raises(ResolutionStateError):
        session.resolve("project:p1:priority", _accept("project:p1:priority", ResolutionStrategy.accept_local))
    with pytest.raises(ResolutionStateError):
        session.defer("project:p1:priority")


def test_unknown_conflict_is_rejected() -> None:
    """Resolving an id that is not part of the session fails."""
    with pytest.raises(ResolutionStateError):
        _session().resolve("project:zz:name", _accept("project:zz:name"))


def test_invalid_custom_value_leaves_conflict_pending() -> None:
    """A validation failure is reported in the outcome, not raised."""
    session = _session()
    resolution = Resolution(
        conflict_id="project:p1:priority", strategy=ResolutionStrategy.custom, custom_value="high",
    )

    outcome = session.resolve("project:p1:priority", resolution)

    assert not outcome.success
    assert outcome.error is not None
    assert "priority" in outcome.error
    assert session.status("project:p1:priority") is ConflictStatus.pending


def test_over_allocation_stages_resolution_until_acknowledged() -> None:
    """Warnings hold a resolution back until the caller acknowledges them."""
    session = _session()
    conflict_id = "assignment:a1:allocationPercentage"

    staged = session.resolve(conflict_id, _accept(conflict_id))

    assert staged.success and not staged.applied
    assert staged.requires_acknowledgement
    assert staged.warnings[0].total_allocation == 110
    assert session.status(conflict_id) is ConflictStatus.pending
    assert [conflict.id for conflict in session.awaiting_acknowledgement()] == [conflict_id]
    assert session.merged_state().index(EntityType.assignment)["a1"]["allocationPercentage"] == 55

    applied = session.acknowledge(conflict_id)

    assert applied.applied
    assert session.status(conflict_id) is ConflictStatus.resolved
    assert session.awaiting_acknowledgement() == []
    assert [warning.total_allocation for warning in session.warnings()] == [110]


def test_acknowledge_without_staged_resolution_fails() -> None:
    """Only staged resolutions can be acknowledged."""
    with pytest.raises(ResolutionStateError):
        _session().acknowledge("project:p1:priority")


def test_resolve_with_acknowledgement_applies_directly() -> None:
    """Callers may accept warnings up front."""
    session = _session()
    conflict_id = "assignment:a1:allocationPercentage"

    outcome = session.resolve(conflict_id, _accept(conflict_id), acknowledge_warnings=True)

    assert outcome.applied
    assert len(outcome.warnings) == 1


def test_warnings_follow_later_resolutions() -> None:
    """Warnings reflect the current merged state, not the state at diff time."""
    session = _session()
    conflict_id = "assignment:a1:allocationPercentage"
    session.resolve(conflict_id, _accept(conflict_id), acknowledge_warnings=True)
    assert session.warnings()

    session2 = _session()
    session2.resolve(conflict_id, _accept(conflict_id, ResolutionStrategy.accept_local))
    assert session2.warnings() == []


def test_defer_and_reopen() -> None:
    """Deferred conflicts keep the local value and can be reopened."""
    session = _session()

    session.defer("project:p1:priority")
    assert session.status("project:p1:priority") is ConflictStatus.deferred
    with pytest.raises(ResolutionStateError):
        session.resolve("project:p1:priority", _accept("project:p1:priority"))

    session.reopen("project:p1:priority")
    assert session.status("project:p1:priority") is ConflictStatus.pending
    with pytest.raises(ResolutionStateError):
        session.reopen("project:p1:priority")


def test_commit_requires_no_pending_conflicts() -> None:
    """Committing with pending conflicts names them and writes nothing."""
    session = _session()
    store = InMemoryEntityStore()

    with pytest.raises(IncompleteMergeError) as excinfo:
        session.commit_merged_state(store)

    assert excinfo.value.pending == ("project:p1:priority", "assignment:a1:allocationPercentage")
    assert store.read_entities("baseline") == {}


def test_commit_writes_merged_state() -> None:
    """A complete session replaces the stored entities atomically."""
    session = _session()
    session.resolve("project:p1:priority", _accept("project:p1:priority"))
    session.defer("assignment:a1:allocationPercentage")
    store = InMemoryEntityStore()

    report = session.commit_merged_state(store)

    stored = store.read_entities("baseline")
    assert [record["priority"] for record in stored[EntityType.project]] == [5, 3]
    assert stored[EntityType.assignment][0]["allocationPercentage"] == 55
    assert report.resolved == ("project:p1:priority",)
    assert report.deferred == ("assignment:a1:allocationPercentage",)
    assert report.record_count == 5
    assert not session.is_open
    with pytest.raises(ResolutionStateError):
        session.defer("project:p1:priority")


def test_commit_rejects_dangling_references() -> None:
    """Deleting a referenced entity cannot be committed silently."""
    base = snapshot("base", project=[project()], assignment=[assignment()], person=[person()])
    local = snapshot("local", project=[], assignment=[assignment()], person=[person()])
    remote = snapshot("remote", project=[project()], assignment=[assignment()], person=[person()])
    session = MergeSession(
        "baseline", base, local, remote, logger=StructuredLogger(name="test", stream=io.StringIO()),
    )
    session.resolve("project:p1:*", _accept("project:p1:*", ResolutionStrategy.accept_local))

    with pytest.raises(ReferentialIntegrityError):
        session.commit_merged_state(InMemoryEntityStore())

    report = session.commit_merged_state(InMemoryEntityStore(), allow_dangling_references=True)
    assert report.record_count == 2


def _logger() -> StructuredLogger:
    return StructuredLogger(name="test", stream=io.StringIO())


def test_custom_name_replaces_both_sides() -> None:
    """A custom value settles a rename made differently on each side."""
    base = snapshot("base", project=[project(name="Alpha")])
    local = snapshot("local", project=[project(name="Alpha-Local")])
    remote = snapshot("remote", project=[project(name="Alpha-Remote")])
    session = MergeSession("baseline", base, local, remote, logger=_logger())
    resolution = Resolution(
        conflict_id="project:p1:name", strategy=ResolutionStrategy.custom, custom_value="Alpha-Final",
    )

    outcome = session.resolve("project:p1:name", resolution)

    assert outcome.success and outcome.applied
    assert session.pending() == []
    assert session.is_complete
    assert session.merged_state().index(EntityType.project)["p1"]["name"] == "Alpha-Final"
    store = InMemoryEntityStore()
    session.commit_merged_state(store)
    assert store.read_entities("baseline")[EntityType.project][0]["name"] == "Alpha-Final"


def test_custom_allocation_is_summed_with_concurrent_assignments() -> None:
    """The over-allocation total uses the custom value, not either side's."""
    base = snapshot(
        "base",
        person=[person()],
        project=[project()],
        assignment=[assignment("a1", allocation=50), assignment("a2", allocation=40)],
    )
    local = snapshot(
        "local",
        person=[person()],
        project=[project()],
        assignment=[assignment("a1", allocation=50), assignment("a2", allocation=45)],
    )
    remote = snapshot(
        "remote",
        person=[person()],
        project=[project()],
        assignment=[assignment("a1", allocation=50), assignment("a2", allocation=30)],
    )
    session = MergeSession("baseline", base, local, remote, logger=_logger())
    conflict_id = "assignment:a2:allocationPercentage"
    resolution = Resolution(conflict_id=conflict_id, strategy=ResolutionStrategy.custom, custom_value=100)

    outcome = session.resolve(conflict_id, resolution)

    assert outcome.requires_acknowledgement
    assert outcome.warnings[0].total_allocation == 150
    assert set(outcome.warnings[0].assignment_ids) == {"a1", "a2"}
    assert session.acknowledge(conflict_id).applied
    assert session.merged_state().index(EntityType.assignment)["a2"]["allocationPercentage"] == 100


def test_accepting_local_everywhere_keeps_remote_only_edits() -> None:
    """Conflicted fields take the local value while one-sided remote edits stay merged."""
    session = _session()

    for conflict in session.conflicts:
        outcome = session.resolve(
            conflict.id, _accept(conflict.id, ResolutionStrategy.accept_local), acknowledge_warnings=True,
        )
        assert outcome.applied

    merged = session.merged_state()
    assert merged.index(EntityType.project)["p1"]["priority"] == 1
    assert merged.index(EntityType.assignment)["a1"]["allocationPercentage"] == 55
    assert merged.index(EntityType.project)["p2"]["name"] == "Local name"
    assert merged.index(EntityType.project)["p2"]["status"] == "on_hold"


def test_inverted_date_range_can_be_settled_by_keeping_local_dates() -> None:
    """Range conflicts raised by the merge commit once both ends are decided."""
    base = snapshot(
        "base",
        person=[person()],
        project=[project()],
        assignment=[assignment(start="2024-01-01", end="2024-06-30")],
    )
    local = snapshot(
        "local",
        person=[person()],
        project=[project()],
        assignment=[assignment(start="2024-05-01", end="2024-06-30")],
    )
    remote = snapshot(
        "remote",
        person=[person()],
        project=[project()],
        assignment=[assignment(start="2024-01-01", end="2024-03-31")],
    )
    session = MergeSession("baseline", base, local, remote, logger=_logger())

    assert [conflict.id for conflict in session.pending()] == [
        "assignment:a1:endDate",
        "assignment:a1:startDate",
    ]
    for conflict in session.conflicts:
        assert session.resolve(conflict.id, _accept(conflict.id, ResolutionStrategy.accept_local)).applied

    store = InMemoryEntityStore()
    session.commit_merged_state(store)
    stored = store.read_entities("baseline")[EntityType.assignment][0]
    assert (stored["startDate"], stored["endDate"]) == ("2024-05-01", "2024-06-30")


def test_written_state_keeps_session_open_until_marked() -> None:
    """Writing without marking leaves the session usable for another attempt."""
    session = _session()
    session.resolve("project:p1:priority", _accept("project:p1:priority"))
    session.defer("assignment:a1:allocationPercentage")

    first = session.write_merged_state(InMemoryEntityStore())
    assert session.is_open
    second = session.write_merged_state(InMemoryEntityStore())
    assert second == first

    session.mark_committed()
    assert not session.is_open
    with pytest.raises(ResolutionStateError):
        session.mark_committed()


def test_custom_threshold_comes_from_resolver() -> None:
    """A stricter threshold turns smaller totals into warnings."""
    session = _session(resolver=ConflictResolver(allocation_threshold=90))
    conflict_id = "assignment:a1:allocationPercentage"

    outcome = session.resolve(conflict_id, _accept(conflict_id, ResolutionStrategy.accept_local))

    assert outcome.requires_acknowledgement
    assert outcome.warnings[0].threshold == 90


def test_abandon_closes_session() -> None:
    """An abandoned session accepts no further changes."""
    session = _session()
    session.abandon()

    with pytest.raises(ResolutionStateError):
        session.defer("project:p1:priority")
    with pytest.raises(ResolutionStateError):
        session.commit_merged_state(InMemoryEntityStore())


def test_scenario_locks_are_exclusive() -> None:
    """A scenario can only be held by one session at a time."""
    locks = ScenarioLocks()
    with locks.hold("baseline"):
        assert locks.is_locked("baseline")
        with pytest.raises(SessionBusyError):
            with locks.hold("baseline"):
                pass
        with locks.hold("other"):
            assert locks.is_locked("other")
    assert not locks.is_locked("baseline")


def test_scenario_lock_timeout_from_other_thread() -> None:
    """Waiting on a held lock gives up after the timeout."""
    locks = ScenarioLocks()
    errors: list[Exception] = []

    def contender() -> None:
        try:
            with locks.hold("baseline", timeout=0.05):
                pass
        except SessionBusyError as exc:
            errors.append(exc)

    with locks.hold("baseline"):
        thread = threading.Thread(target=contender)
        thread.start()
        thread.join()

    assert len(errors) == 1
