from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
import logging
import uuid

from scheduling_core import (
    PlanResult,
    ScenarioMetrics,
    Segment,
    SkippedJob,
    StrategyConfig,
)
from work_calendar import (
    SHIFT_START_HOUR,
    add_work_days,
    advance_work_minutes,
    ceil_to_quarter_hour,
    next_valid_work_time,
)

logger = logging.getLogger(__name__)


@dataclass
class SavedScenario:
    """A planning run kept for comparison before it is applied."""
    name: str
    config: StrategyConfig
    segments: List[Segment]
    skipped: List[SkippedJob]
    metrics: ScenarioMetrics
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    applied_at: Optional[datetime] = None

    @classmethod
    def from_plan(cls, name: str, plan: PlanResult, *, created_by: Optional[str] = None) -> SavedScenario:
        return cls(
            name=name,
            config=plan.config,
            segments=list(plan.segments),
            skipped=list(plan.skipped),
            metrics=plan.metrics,
            created_by=created_by,
        )

    @property
    def strategy(self) -> str:
        return self.config.main_strategy.value

    def mark_applied(self, when: Optional[datetime] = None) -> None:
        self.applied_at = when or datetime.now()


def suggest_name(existing_count: int, strategy_label: str) -> str:
    return f"Scenario #{existing_count + 1}: {strategy_label}"


# metric -> lower is better
COMPARED_METRICS: Dict[str, bool] = {
    "total_segments": False,
    "total_hours": False,
    "late_jobs": True,
    "avg_lead_time_days": True,
}


def best_by_metric(scenarios: Sequence[SavedScenario]) -> Dict[str, str]:
    """Winning scenario id per compared metric; the first one wins ties."""
    if not scenarios:
        return {}

    out: Dict[str, str] = {}
    for metric, lower in COMPARED_METRICS.items():
        best = scenarios[0]
        best_val = getattr(best.metrics, metric)
        for s in scenarios[1:]:
            val = getattr(s.metrics, metric)
            if (val < best_val) if lower else (val > best_val):
                best, best_val = s, val
        out[metric] = best.id
    return out


# ----------------------------
# Moving a whole scenario in time
# ----------------------------

def _duration_minutes(seg: Segment) -> float:
    return (seg.end - seg.start).total_seconds() / 60.0


def _first_blocker(seg: Segment, start: datetime, end: datetime, obstacles: Iterable[Segment]) -> Optional[Segment]:
    hits = [
        o for o in obstacles
        if o.id != seg.id
        and (o.machine == seg.machine or o.job_id == seg.job_id)
        and o.start < end and o.end > start
    ]
    return min(hits, key=lambda o: (o.start, o.end, o.id)) if hits else None


def shift_by_work_days(
    segments: Sequence[Segment],
    offset_days: int,
    existing: Iterable[Segment],
) -> List[Segment]:
    """
    Move every segment so the earliest one lands `offset_days` working days
    later (or earlier when negative) at shift start. Durations are walked
    through the calendar, so a moved segment may run across a shift break.
    A segment hitting a committed segment on its machine or job is pushed
    once past it.
    """
    if offset_days == 0 or not segments:
        return list(segments)

    earliest = min(s.start for s in segments)
    target = add_work_days(earliest, offset_days)
    target = next_valid_work_time(target.replace(hour=SHIFT_START_HOUR, minute=0, second=0, microsecond=0))
    offset = target - earliest

    obstacles = [s for s in existing if s.committed]

    out: List[Segment] = []
    for seg in segments:
        minutes = _duration_minutes(seg)
        new_start = next_valid_work_time(seg.start + offset)
        new_end = advance_work_minutes(new_start, minutes)

        blocker = _first_blocker(seg, new_start, new_end, obstacles)
        if blocker is not None:
            new_start = next_valid_work_time(blocker.end)
            new_end = advance_work_minutes(new_start, minutes)

        out.append(seg.moved(new_start, new_end))

    logger.info("Shifted %d segments by %+d work days", len(out), offset_days)
    return out


def shift_to(
    segments: Sequence[Segment],
    target: datetime,
    existing: Iterable[Segment],
) -> List[Segment]:
    """
    Re-anchor a scenario so its earliest segment starts at `target`.

    Segments are replayed in start order; each keeps its job's sequence,
    snaps to a quarter hour inside working time, and is pushed past committed
    segments and the segments already moved in this call.
    """
    if not segments:
        return []

    obstacles = [s for s in existing if s.committed]

    earliest = min(s.start for s in segments)
    anchor = next_valid_work_time(ceil_to_quarter_hour(target))
    offset: timedelta = anchor - earliest

    job_ready: Dict[str, datetime] = {}
    out: List[Segment] = []

    for seg in sorted(segments, key=lambda s: (s.start, s.id)):
        minutes = _duration_minutes(seg)

        proposed = seg.start + offset
        ready = job_ready.get(seg.job_id)
        if ready is not None and proposed < ready:
            proposed = ready
        start = next_valid_work_time(ceil_to_quarter_hour(proposed))

        while True:
            end = advance_work_minutes(start, minutes)
            blocker = _first_blocker(seg, start, end, obstacles)
            if blocker is None:
                break
            start = next_valid_work_time(ceil_to_quarter_hour(blocker.end))

        moved = seg.moved(start, end)
        out.append(moved)
        obstacles.append(moved)
        job_ready[seg.job_id] = end

    return out
