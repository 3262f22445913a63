from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from scheduling_core import ResourceId, Segment
from work_calendar import SHIFT_END_HOUR, SHIFT_START_HOUR, day_start

# Bar geometry used to size machine rows.
BAR_HEIGHT = 36
BAR_GAP = 4
ROW_PADDING = 8

UNASSIGNED_MACHINE = "UNASSIGNED"


def _machine_of(seg: Segment) -> ResourceId:
    return seg.machine or UNASSIGNED_MACHINE


def group_by_machine_day(segments: Iterable[Segment]) -> Dict[Tuple[ResourceId, date], List[Segment]]:
    groups: Dict[Tuple[ResourceId, date], List[Segment]] = defaultdict(list)
    for s in segments:
        groups[(_machine_of(s), s.start.date())].append(s)
    return groups


def assign_lanes(segments: Iterable[Segment]) -> Dict[str, int]:
    """
    Greedy interval partitioning per (machine, day).

    Segments are visited by start time and dropped into the lowest lane that
    is already free; a new lane opens only when every lane is busy. The lane
    count of a group equals its maximum number of simultaneous segments.
    """
    lanes: Dict[str, int] = {}

    for _key, group in group_by_machine_day(segments).items():
        group.sort(key=lambda s: (s.start, s.end, s.id))
        lane_ends: List[datetime] = []

        for seg in group:
            assigned = next((i for i, end in enumerate(lane_ends) if end <= seg.start), None)
            if assigned is None:
                lane_ends.append(seg.end)
                assigned = len(lane_ends) - 1
            else:
                lane_ends[assigned] = seg.end
            lanes[seg.id] = assigned

    return lanes


def machine_lane_counts(segments: Iterable[Segment], lanes: Optional[Dict[str, int]] = None) -> Dict[ResourceId, int]:
    """Peak lane count per machine across every visible day."""
    segs = list(segments)
    if lanes is None:
        lanes = assign_lanes(segs)

    counts: Dict[ResourceId, int] = {}
    for s in segs:
        m = _machine_of(s)
        counts[m] = max(counts.get(m, 0), lanes.get(s.id, 0) + 1)
    return counts


def row_height(lane_count: int) -> int:
    n = max(1, int(lane_count))
    return ROW_PADDING * 2 + n * BAR_HEIGHT + (n - 1) * BAR_GAP


def machine_row_heights(machines: Iterable[ResourceId], segments: Iterable[Segment]) -> Dict[ResourceId, int]:
    counts = machine_lane_counts(segments)
    return {m: row_height(counts.get(m, 1)) for m in machines}


def machine_utilization(
    segments: Iterable[Segment],
    machine: ResourceId,
    window_start: datetime,
    window_end: datetime,
) -> int:
    """
    Percent of shift hours in the window occupied on `machine` (0-100).

    Overlapping segments are counted once: within a day only segments that
    start after the previous occupied stretch add time.
    """
    machine_segs = [s for s in segments if _machine_of(s) == machine]
    if not machine_segs:
        return 0

    shift_hours = SHIFT_END_HOUR - SHIFT_START_HOUR
    total_shift_hours = 0.0
    occupied = 0.0

    day = day_start(window_start)
    while day < window_end:
        total_shift_hours += shift_hours
        day_open = day.replace(hour=SHIFT_START_HOUR)
        day_close = day.replace(hour=SHIFT_END_HOUR)

        daily = sorted(
            (s for s in machine_segs if s.overlaps(day_open, day_close)),
            key=lambda s: (s.start, s.end),
        )
        busy_until: Optional[datetime] = None
        for s in daily:
            if busy_until is None or s.start >= busy_until:
                lo = max(s.start, day_open)
                hi = min(s.end, day_close)
                occupied += (hi - lo).total_seconds() / 3600.0
            busy_until = s.end if busy_until is None else max(busy_until, s.end)

        day += timedelta(days=1)

    if total_shift_hours == 0:
        return 0
    return min(100, round(occupied / total_shift_hours * 100))
