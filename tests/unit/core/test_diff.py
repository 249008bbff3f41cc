from __future__ import annotations

from scenariosync.core.diff import DiffEngine, conflict_id, content_equal, diff, json_equal, three_way_merge
from scenariosync.core.models import ENTITY_FIELD, ConflictKind, EntityType
from tests.conftest import assignment, person, project, snapshot


def test_json_equal_distinguishes_booleans_from_numbers() -> None:
    """Structural comparison never treats a boolean as a number."""
    assert json_equal(1, 1.0)
    assert not json_equal(True, 1)
    assert not json_equal(0, False)
    assert json_equal({"a": [1, {"b": None}]}, {"a": [1.0, {"b": None}]})
    assert not json_equal([1, 2], [2, 1])
    assert not json_equal({"a": 1}, {"a": 1, "b": 2})
    assert not json_equal("1", 1)


def test_content_equal_ignores_system_fields() -> None:
    """Identity and audit fields do not count as content."""
    assert content_equal(project(), project(updatedAt="2024-06-01T00:00:00Z"))
    assert not content_equal(project(), project(priority=4))


def test_identical_snapshots_have_no_conflicts() -> None:
    """Diffing a snapshot against itself yields nothing."""
    base = snapshot("base", project=[project()], person=[person()])

    assert diff(base, base, base) == []


def test_one_sided_edit_is_taken() -> None:
    """A field changed on one side only is merged silently."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project()])
    remote = snapshot("remote", project=[project(priority=5)])

    result = three_way_merge(base, local, remote)

    assert result.clean
    assert result.merged.index(EntityType.project)["p1"]["priority"] == 5


def test_complementary_edits_merge_without_conflict() -> None:
    """Different fields changed on each side are combined."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project(name="Renamed")])
    remote = snapshot("remote", project=[project(priority=1)])

    merged = three_way_merge(base, local, remote).merged.index(EntityType.project)["p1"]

    assert merged["name"] == "Renamed"
    assert merged["priority"] == 1


def test_same_change_on_both_sides_is_not_a_conflict() -> None:
    """Convergent edits merge cleanly."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project(priority=2)])
    remote = snapshot("remote", project=[project(priority=2)])

    assert diff(base, local, remote) == []


def test_divergent_field_edit_is_reported() -> None:
    """Both sides changing one field to different values is a conflict."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project(priority=1)])
    remote = snapshot("remote", project=[project(priority=5)])

    result = three_way_merge(base, local, remote)

    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.id == "project:p1:priority"
    assert conflict.kind is ConflictKind.field
    assert conflict.entity_name == "Project p1"
    assert (conflict.base_value, conflict.local_value, conflict.remote_value) == (3, 1, 5)
    assert result.merged.index(EntityType.project)["p1"]["priority"] == 1


def test_timestamps_never_conflict_and_latest_wins() -> None:
    """updatedAt takes the later of both sides instead of raising a conflict."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project(updatedAt="2024-03-01T00:00:00Z")])
    remote = snapshot("remote", project=[project(updatedAt="2024-04-01T00:00:00Z")])

    result = three_way_merge(base, local, remote)

    assert result.clean
    assert result.merged.index(EntityType.project)["p1"]["updatedAt"] == "2024-04-01T00:00:00Z"


def test_removed_field_against_edit_conflicts() -> None:
    """Dropping an optional field while the other side edits it is a conflict."""
    base = snapshot("base", project=[project(description="old")])
    local = snapshot("local", project=[project(description="new")])
    remote_record = project()
    remote = snapshot("remote", project=[remote_record])

    conflicts = diff(base, local, remote)

    assert [conflict.field for conflict in conflicts] == ["description"]
    assert conflicts[0].remote_value is None


def test_one_sided_creation_is_added() -> None:
    """Entities created on one side only appear in the merge."""
    base = snapshot("base", person=[person("u1")])
    local = snapshot("local", person=[person("u1"), person("u2")])
    remote = snapshot("remote", person=[person("u1"), person("u3")])

    result = three_way_merge(base, local, remote)

    assert result.clean
    assert sorted(result.merged.index(EntityType.person)) == ["u1", "u2", "u3"]


def test_divergent_creation_is_a_creation_conflict() -> None:
    """The same id created twice with different content conflicts per field."""
    base = snapshot("base")
    local = snapshot("local", person=[person("u9", name="Ada")])
    remote = snapshot("remote", person=[person("u9", name="Grace")])

    conflicts = diff(base, local, remote)

    assert [conflict.id for conflict in conflicts] == ["person:u9:name"]
    assert conflicts[0].kind is ConflictKind.creation
    assert conflicts[0].base_value is None


def test_identical_creation_is_clean() -> None:
    """The same record created on both sides merges as one."""
    local = snapshot("local", person=[person("u9")])
    remote = snapshot("remote", person=[person("u9")])

    assert three_way_merge(snapshot("base"), local, remote).clean


def test_deletion_against_edit_is_an_entity_conflict() -> None:
    """Deleting an entity the other side modified needs a decision."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[])
    remote = snapshot("remote", project=[project(priority=5)])

    result = three_way_merge(base, local, remote)

    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.field == ENTITY_FIELD
    assert conflict.is_entity_level
    assert conflict.kind is ConflictKind.deletion
    assert conflict.local_value is None
    assert conflict.remote_value["priority"] == 5
    assert EntityType.project in result.merged.entities
    assert result.merged.records(EntityType.project) == []


def test_deletion_of_untouched_entity_needs_confirmation_by_default() -> None:
    """With confirmation enabled even an untouched deletion is surfaced."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project()])
    remote = snapshot("remote", project=[])

    confirmed = DiffEngine().merge(base, local, remote)
    automatic = DiffEngine(confirm_deletions=False).merge(base, local, remote)

    assert [conflict.id for conflict in confirmed.conflicts] == ["project:p1:*"]
    assert confirmed.merged.index(EntityType.project)["p1"] == project()
    assert automatic.clean
    assert automatic.merged.records(EntityType.project) == []


def test_deletion_on_both_sides_is_clean() -> None:
    """An entity removed everywhere stays removed."""
    base = snapshot("base", person=[person()])
    local = snapshot("local", person=[])
    remote = snapshot("remote", person=[])

    result = three_way_merge(base, local, remote)

    assert result.clean
    assert result.merged.records(EntityType.person) == []


def test_conflicts_are_ordered_by_type_then_id_then_field() -> None:
    """Conflict order is deterministic."""
    base = snapshot(
        "base",
        project=[project("p2"), project("p1")],
        assignment=[assignment("a1")],
    )
    local = snapshot(
        "local",
        project=[project("p2", priority=1, name="L2"), project("p1", priority=1)],
        assignment=[assignment("a1", allocation=60)],
    )
    remote = snapshot(
        "remote",
        project=[project("p2", priority=5, name="R2"), project("p1", priority=5)],
        assignment=[assignment("a1", allocation=70)],
    )

    ids = [conflict.id for conflict in diff(remote=remote, local=local, base=base)]

    assert ids == [
        "project:p1:priority",
        "project:p2:name",
        "project:p2:priority",
        "assignment:a1:allocationPercentage",
    ]


def test_assignment_conflicts_are_labelled_by_person_and_project() -> None:
    """Assignments have no name so their label combines person and project."""
    base = snapshot("base", assignment=[assignment()])
    local = snapshot("local", assignment=[assignment(allocation=60)])
    remote = snapshot("remote", assignment=[assignment(allocation=80)])

    conflict = diff(base, local, remote)[0]

    assert conflict.entity_name == "u1 on p1"
    assert conflict.id == conflict_id(EntityType.assignment, "a1", "allocationPercentage")


def test_boolean_and_numeric_values_are_not_equal() -> None:
    """A boolean on one side and a number on the other is still divergent."""
    base = snapshot("base", person=[person(availabilityPercentage=50)])
    local = snapshot("local", person=[person(availabilityPercentage=1)])
    remote = snapshot("remote", person=[person(availabilityPercentage=True)])

    assert [conflict.field for conflict in diff(base, local, remote)] == ["availabilityPercentage"]


def test_swapping_sides_swaps_conflict_values() -> None:
    """Local and remote play symmetric roles: same conflicts, values exchanged."""
    base = snapshot(
        "base",
        project=[project("p1"), project("p2")],
        person=[person("u1")],
        assignment=[assignment("a1")],
    )
    local = snapshot(
        "local",
        project=[project("p1", priority=1), project("p3", priority=2)],
        person=[person("u1", email="local@example.com")],
        assignment=[assignment("a1", allocation=60)],
    )
    remote = snapshot(
        "remote",
        project=[project("p1", priority=5), project("p2", status="on_hold"), project("p3", priority=4)],
        person=[person("u1", email="remote@example.com")],
        assignment=[assignment("a1", allocation=70, notes="remote note")],
    )

    forward = diff(base, local, remote)
    backward = diff(base, remote, local)

    assert [conflict.id for conflict in forward] == [conflict.id for conflict in backward]
    assert len(forward) == 5
    for ahead, behind in zip(forward, backward, strict=True):
        assert ahead.kind == behind.kind
        assert ahead.base_value == behind.base_value
        assert ahead.local_value == behind.remote_value
        assert ahead.remote_value == behind.local_value


def test_one_sided_dates_that_invert_the_range_conflict_on_both_ends() -> None:
    """A later start taken from one side and an earlier end from the other is not auto-merged."""
    base = snapshot("base", assignment=[assignment(start="2024-01-01", end="2024-06-30", notes="b")])
    local = snapshot("local", assignment=[assignment(start="2024-05-01", end="2024-06-30", notes="L")])
    remote = snapshot("remote", assignment=[assignment(start="2024-01-01", end="2024-03-31", notes="R")])

    result = three_way_merge(base, local, remote)

    assert [conflict.field for conflict in result.conflicts] == ["endDate", "notes", "startDate"]
    end_conflict = result.conflicts[0]
    assert end_conflict.kind == ConflictKind.field
    assert end_conflict.base_value == "2024-06-30"
    assert end_conflict.local_value == "2024-06-30"
    assert end_conflict.remote_value == "2024-03-31"
    merged = result.merged.index(EntityType.assignment)["a1"]
    assert (merged["startDate"], merged["endDate"]) == ("2024-05-01", "2024-06-30")


def test_one_sided_dates_that_keep_the_range_ordered_merge_cleanly() -> None:
    """Independent date edits still merge when the combined range stays valid."""
    base = snapshot("base", project=[project()])
    local = snapshot("local", project=[project(aspirationStart="2024-03-01")])
    remote = snapshot("remote", project=[project(aspirationFinish="2024-09-30")])

    result = three_way_merge(base, local, remote)

    assert result.clean
    merged = result.merged.index(EntityType.project)["p1"]
    assert (merged["aspirationStart"], merged["aspirationFinish"]) == ("2024-03-01", "2024-09-30")
