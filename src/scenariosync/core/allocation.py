"""Capacity guardrails evaluated while conflicts are being resolved."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from scenariosync.core.models import OverAllocationWarning, PhaseBoundsWarning

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence


_PRECISION = 6


@dataclass(frozen=True, slots=True)
class LoadSegment:
    """A run of days during which the same assignments are active."""

    start: date
    end: date
    load: float
    assignment_ids: tuple[str, ...]


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _span(record: Mapping[str, Any]) -> tuple[date, date] | None:
    start = _parse_date(record.get("startDate"))
    end = _parse_date(record.get("endDate"))
    if start is None or end is None or end < start:
        return None
    return start, end


def ranges_overlap(first: tuple[date, date], second: tuple[date, date]) -> bool:
    """Return True when two inclusive date ranges share at least one day."""
    return first[0] <= second[1] and second[0] <= first[1]


def load_segments(
    assignments: Iterable[Mapping[str, Any]],
    *,
    window: tuple[date, date] | None = None,
) -> list[LoadSegment]:
    """Split the assignments' dates into segments of constant summed allocation.

    Ranges are inclusive on both ends, so an assignment ending on the day
    before another starts never overlaps it. When ``window`` is given only the
    days inside it are considered.
    """
    events: dict[date, list[tuple[float, str]]] = {}
    for record in assignments:
        span = _span(record)
        if span is None:
            continue
        if window is not None:
            if not ranges_overlap(span, window):
                continue
            span = (max(span[0], window[0]), min(span[1], window[1]))
        allocation = float(record.get("allocationPercentage") or 0)
        identifier = str(record.get("id"))
        events.setdefault(span[0], []).append((allocation, identifier))
        events.setdefault(span[1] + timedelta(days=1), []).append((-allocation, identifier))

    segments: list[LoadSegment] = []
    active: dict[str, float] = {}
    boundaries = sorted(events)
    for position, boundary in enumerate(boundaries[:-1]):
        for allocation, identifier in events[boundary]:
            if allocation < 0 or (allocation == 0 and identifier in active):
                active.pop(identifier, None)
            else:
                active[identifier] = allocation
        if not active:
            continue
        end = boundaries[position + 1] - timedelta(days=1)
        load = round(sum(active.values()), _PRECISION)
        segments.append(LoadSegment(boundary, end, load, tuple(sorted(active))))
    return segments


def _person_name(people: Mapping[str, Mapping[str, Any]], person_id: str) -> str:
    person = people.get(person_id)
    if person is None:
        return person_id
    return str(person.get("name") or person_id)


def check_assignment(
    assignment: Mapping[str, Any],
    assignments: Sequence[Mapping[str, Any]],
    people: Mapping[str, Mapping[str, Any]],
    *,
    threshold: float = 100.0,
) -> OverAllocationWarning | None:
    """Return a warning when ``assignment`` pushes its person over ``threshold``.

    ``assignments`` is the current merged assignment set; any entry sharing the
    candidate's id is replaced by the candidate. The reported total is the
    peak concurrent allocation within the candidate's own date range.
    """
    span = _span(assignment)
    person_id = assignment.get("personId")
    if span is None or not isinstance(person_id, str):
        return None
    candidate_id = assignment.get("id")
    peers = [
        record
        for record in assignments
        if record.get("personId") == person_id and record.get("id") != candidate_id
    ]
    peers.append(assignment)
    segments = load_segments(peers, window=span)
    if not segments:
        return None
    peak = max(segments, key=lambda segment: segment.load)
    if peak.load <= threshold:
        return None
    return OverAllocationWarning(
        person_id=person_id,
        person_name=_person_name(people, person_id),
        total_allocation=peak.load,
        threshold=threshold,
        start_date=peak.start.isoformat(),
        end_date=peak.end.isoformat(),
        assignment_ids=peak.assignment_ids,
    )


def find_over_allocations(
    assignments: Sequence[Mapping[str, Any]],
    people: Mapping[str, Mapping[str, Any]],
    *,
    threshold: float = 100.0,
    person_id: str | None = None,
) -> list[OverAllocationWarning]:
    """Return every overloaded window, one warning per contiguous run per person."""
    by_person: dict[str, list[Mapping[str, Any]]] = {}
    for record in assignments:
        owner = record.get("personId")
        if isinstance(owner, str) and (person_id is None or owner == person_id):
            by_person.setdefault(owner, []).append(record)

    warnings: list[OverAllocationWarning] = []
    for owner in sorted(by_person):
        run: list[LoadSegment] = []
        for segment in [*load_segments(by_person[owner]), None]:
            contiguous = (
                segment is not None
                and segment.load > threshold
                and (not run or run[-1].end + timedelta(days=1) == segment.start)
            )
            if contiguous and segment is not None:
                run.append(segment)
                continue
            if run:
                warnings.append(_warning_for_run(owner, run, people, threshold))
                run = []
            if segment is not None and segment.load > threshold:
                run.append(segment)
    return warnings


def _warning_for_run(
    person_id: str,
    run: Sequence[LoadSegment],
    people: Mapping[str, Mapping[str, Any]],
    threshold: float,
) -> OverAllocationWarning:
    identifiers = sorted({identifier for segment in run for identifier in segment.assignment_ids})
    return OverAllocationWarning(
        person_id=person_id,
        person_name=_person_name(people, person_id),
        total_allocation=max(segment.load for segment in run),
        threshold=threshold,
        start_date=run[0].start.isoformat(),
        end_date=run[-1].end.isoformat(),
        assignment_ids=tuple(identifiers),
    )


def phase_bounds_warnings(
    project: Mapping[str, Any],
    phases: Iterable[Mapping[str, Any]],
) -> list[PhaseBoundsWarning]:
    """Report phases of ``project`` that start before or end after its aspiration dates."""
    project_id = str(project.get("id"))
    project_start = _parse_date(project.get("aspirationStart"))
    project_finish = _parse_date(project.get("aspirationFinish"))
    warnings: list[PhaseBoundsWarning] = []
    for phase in phases:
        if phase.get("projectId") != project_id:
            continue
        phase_id = str(phase.get("id"))
        phase_name = str(phase.get("name") or phase_id)
        phase_start = _parse_date(phase.get("startDate"))
        phase_end = _parse_date(phase.get("endDate"))
        if project_start is not None and phase_start is not None and phase_start < project_start:
            warnings.append(
                PhaseBoundsWarning(
                    project_id=project_id,
                    phase_id=phase_id,
                    phase_name=phase_name,
                    reason=f"phase {phase_name} starts before project start",
                ),
            )
        if project_finish is not None and phase_end is not None and phase_end > project_finish:
            warnings.append(
                PhaseBoundsWarning(
                    project_id=project_id,
                    phase_id=phase_id,
                    phase_name=phase_name,
                    reason=f"phase {phase_name} ends after project end",
                ),
            )
    return warnings


__all__ = [
    "LoadSegment",
    "check_assignment",
    "find_over_allocations",
    "load_segments",
    "phase_bounds_warnings",
    "ranges_overlap",
]
