from __future__ import annotations

from bisect import bisect_left, bisect_right
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from itertools import count
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)
import logging

import pandas as pd

from work_calendar import (
    MIN_SHIFT_REMAINDER_HOURS,
    SHIFT_END_HOUR,
    SHIFT_START_HOUR,
    global_start,
    hours_left_in_shift,
    is_working_time,
    next_valid_work_time,
    shift_end,
)

logger = logging.getLogger(__name__)


# ----------------------------
# Types / Exceptions
# ----------------------------

ResourceId = str

# A step counts as done once less than this many hours remain.
REALIZED_TOLERANCE_HOURS = 0.1
_EPS_HOURS = 1e-6


class ScheduleError(Exception):
    pass


class SegmentNotFoundError(ScheduleError):
    pass


class ValidationError(ScheduleError):
    pass


class PersistenceError(ScheduleError):
    pass


class SkipKind(str, Enum):
    NO_STEP_PLAN = "NO_STEP_PLAN"
    FILTERED_OUT = "FILTERED_OUT"
    UNKNOWN_RESOURCE = "UNKNOWN_RESOURCE"


@dataclass(frozen=True, slots=True)
class Step:
    machine: ResourceId
    hours: float


@dataclass(frozen=True, slots=True)
class Job:
    """
    A production order and its routing.

    `steps` order IS the dependency order: step i+1 may not start before
    step i has finished, whatever machines they use.
    """
    id: str
    steps: Tuple[Step, ...] = ()
    status: str = ""
    delivery_date: Optional[datetime] = None
    project_delivery_date: Optional[datetime] = None
    project_id: str = ""
    material: str = ""
    treatment: str = ""
    has_model: bool = False
    has_blueprint: bool = False
    created_at: Optional[datetime] = None
    description: str = ""

    @property
    def due_date(self) -> Optional[datetime]:
        return self.delivery_date or self.project_delivery_date

    @property
    def total_hours(self) -> float:
        return sum(float(s.hours or 0.0) for s in self.steps)

    @property
    def has_treatment(self) -> bool:
        t = (self.treatment or "").strip()
        return bool(t) and t.upper() != "N/A"


@dataclass(frozen=True, slots=True)
class Segment:
    """One scheduled interval on one machine, realizing (part of) one step."""
    id: str
    job_id: str
    machine: ResourceId
    start: datetime
    end: datetime
    step_index: int = 0
    draft: bool = False
    locked: Optional[bool] = None  # None = not set explicitly
    started: bool = False
    finished: bool = False

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Segment {self.id}: end {self.end} must be after start {self.start}.")

    @property
    def committed(self) -> bool:
        return not self.draft

    @property
    def hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600.0

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start

    def moved(self, start: datetime, end: datetime) -> Segment:
        return replace(self, start=start, end=end)


@dataclass(frozen=True, slots=True)
class SkippedJob:
    job: Job
    reason: str
    kind: SkipKind


def is_effectively_locked(seg: Segment, now: datetime) -> bool:
    """
    Drafts are never locked. An explicit `locked` value wins; otherwise a
    started, finished or already-begun segment is locked.
    """
    if seg.draft:
        return False
    if seg.locked is not None:
        return bool(seg.locked)
    return seg.started or seg.finished or seg.start < now


# ----------------------------
# Priority ranking
# ----------------------------

class SchedulingStrategy(str, Enum):
    DELIVERY_DATE = "DELIVERY_DATE"
    FAB_TIME = "FAB_TIME"
    FAST_TRACK = "FAST_TRACK"
    CRITICAL_PATH = "CRITICAL_PATH"
    PROJECT_GROUP = "PROJECT_GROUP"
    MATERIAL_OPTIMIZATION = "MATERIAL_OPTIMIZATION"
    TREATMENTS = "TREATMENTS"


@dataclass(frozen=True, slots=True)
class StrategyConfig:
    main_strategy: SchedulingStrategy = SchedulingStrategy.DELIVERY_DATE
    only_with_cad: bool = False
    only_with_blueprint: bool = False
    only_with_material: bool = False
    require_treatment: bool = False


class PriorityLevel(str, Enum):
    CRITICAL = "CRITICAL"
    SOON = "SOON"
    NORMAL = "NORMAL"
    PLENTY = "PLENTY"


MATERIAL_AVAILABLE = "A8-MATERIAL AVAILABLE"

STATUS_TIERS: Dict[str, int] = {
    MATERIAL_AVAILABLE: 2,
    "A7-AWAITING MATERIAL": 3,
    "A5-VERIFY MATERIAL": 4,
    "A0-AWAITING MATERIAL": 5,
    "A0-NEW PROJECT": 5,
}
UNRANKED_TIER = 99


def normalize_code(value: object) -> str:
    """Status codes and machine names: trimmed, upper-cased, single-spaced."""
    if _missing(value):
        return ""
    return " ".join(str(value).strip().upper().split())


def status_tier(status: object) -> int:
    return STATUS_TIERS.get(normalize_code(status), UNRANKED_TIER)


def _delivery_key(j: Job) -> tuple:
    return (status_tier(j.status), j.due_date or datetime.max)


_STRATEGY_KEYS: Dict[SchedulingStrategy, Callable[[Job], tuple]] = {
    SchedulingStrategy.DELIVERY_DATE: lambda j: (*_delivery_key(j), j.id),
    SchedulingStrategy.FAB_TIME: lambda j: (-j.total_hours, *_delivery_key(j), j.id),
    SchedulingStrategy.FAST_TRACK: lambda j: (j.total_hours, *_delivery_key(j), j.id),
    SchedulingStrategy.CRITICAL_PATH: lambda j: (0 if j.has_treatment else 1, *_delivery_key(j), j.id),
    SchedulingStrategy.PROJECT_GROUP: lambda j: (j.project_id or "", *_delivery_key(j), j.id),
    SchedulingStrategy.MATERIAL_OPTIMIZATION: lambda j: (j.material or "", *_delivery_key(j), j.id),
    SchedulingStrategy.TREATMENTS: lambda j: (j.treatment or "", *_delivery_key(j), j.id),
}


def strategy_sort_key(strategy: SchedulingStrategy | str) -> Callable[[Job], tuple]:
    return _STRATEGY_KEYS[SchedulingStrategy(strategy)]


def compare_jobs(a: Job, b: Job, strategy: SchedulingStrategy | str = SchedulingStrategy.DELIVERY_DATE) -> int:
    key = strategy_sort_key(strategy)
    ka, kb = key(a), key(b)
    return (ka > kb) - (ka < kb)


# (config flag, skip reason, predicate that must hold)
JOB_FILTERS: List[Tuple[str, str, Callable[[Job], bool]]] = [
    ("only_with_cad", "no 3-D model", lambda j: bool(j.has_model)),
    ("only_with_blueprint", "no released blueprint", lambda j: bool(j.has_blueprint)),
    ("only_with_material", "material not available", lambda j: normalize_code(j.status) == MATERIAL_AVAILABLE),
    ("require_treatment", "no external treatment", lambda j: j.has_treatment),
]


class RankResult(NamedTuple):
    ordered: List[Job]
    skipped: List[SkippedJob]


def rank_jobs(jobs: Iterable[Job], config: StrategyConfig = StrategyConfig()) -> RankResult:
    ordered: List[Job] = []
    skipped: List[SkippedJob] = []

    for j in jobs:
        if not j.steps:
            skipped.append(SkippedJob(j, "no evaluated step plan", SkipKind.NO_STEP_PLAN))
            continue

        failed = next(
            (reason for flag, reason, ok in JOB_FILTERS if getattr(config, flag) and not ok(j)),
            None,
        )
        if failed is not None:
            skipped.append(SkippedJob(j, failed, SkipKind.FILTERED_OUT))
            continue

        ordered.append(j)

    ordered.sort(key=strategy_sort_key(config.main_strategy))
    logger.debug(
        "Ranked %d jobs with %s (%d skipped)",
        len(ordered), SchedulingStrategy(config.main_strategy).value, len(skipped),
    )
    return RankResult(ordered=ordered, skipped=skipped)


def _as_date(x: date | datetime) -> date:
    return x.date() if isinstance(x, datetime) else x


def priority_level(delivery: Optional[date | datetime], today: Optional[date | datetime] = None) -> PriorityLevel:
    if delivery is None:
        return PriorityLevel.PLENTY

    diff_days = (_as_date(delivery) - _as_date(today or datetime.now())).days
    if diff_days < 0:
        return PriorityLevel.CRITICAL
    if diff_days <= 3:
        return PriorityLevel.SOON
    if diff_days <= 10:
        return PriorityLevel.NORMAL
    return PriorityLevel.PLENTY


# ----------------------------
# Known-segment index
# ----------------------------

class MachineIndex:
    """Segments per machine, kept sorted by start, grown as drafts are placed."""

    def __init__(self, segments: Iterable[Segment] = ()):
        self._segs: Dict[ResourceId, List[Segment]] = defaultdict(list)
        self._starts: Dict[ResourceId, List[datetime]] = defaultdict(list)
        for s in segments:
            self.add(s)

    def add(self, seg: Segment) -> None:
        starts = self._starts[seg.machine]
        i = bisect_right(starts, seg.start)
        starts.insert(i, seg.start)
        self._segs[seg.machine].insert(i, seg)

    def discard(self, seg: Segment) -> None:
        segs = self._segs.get(seg.machine, [])
        for i, s in enumerate(segs):
            if s.id == seg.id:
                del segs[i]
                del self._starts[seg.machine][i]
                return

    def first_collision(self, machine: ResourceId, start: datetime, end: datetime) -> Optional[Segment]:
        """Earliest-starting segment on `machine` overlapping [start, end)."""
        segs = self._segs.get(machine, [])
        hi = bisect_left(self._starts.get(machine, []), end)
        for seg in segs[:hi]:
            if seg.end > start:
                return seg
        return None

    def on_machine(self, machine: ResourceId) -> List[Segment]:
        return list(self._segs.get(machine, []))

    def all(self) -> List[Segment]:
        return [s for segs in self._segs.values() for s in segs]

    def __len__(self) -> int:
        return sum(len(v) for v in self._segs.values())


# ----------------------------
# Segment planner (greedy bin-packing)
# ----------------------------

class PlannerResult(NamedTuple):
    drafts: List[Segment]
    skipped: List[SkippedJob]


class SegmentPlanner:
    """
    Greedy single-pass placement of job steps onto machines.

    Jobs are taken in ranked order; each step is split across shifts as
    needed and never overlaps anything already known on its machine. A job
    with any unknown machine contributes nothing.
    """

    def __init__(
        self,
        machines: Iterable[ResourceId],
        known_segments: Iterable[Segment] | MachineIndex = (),
        *,
        start_time: datetime,
        id_factory: Optional[Callable[[Job, int, ResourceId, int], str]] = None,
    ):
        self.machines = set(machines)
        self.known = known_segments if isinstance(known_segments, MachineIndex) else MachineIndex(known_segments)
        self.start_time = start_time
        self._seq = count(1)
        self._id_factory = id_factory or self._default_id

        self._committed_by_job: Dict[str, List[Segment]] = defaultdict(list)
        for s in self.known.all():
            if s.committed:
                self._committed_by_job[s.job_id].append(s)

    def _default_id(self, job: Job, step_no: int, machine: ResourceId, n: int) -> str:
        return f"draft-{job.id}-{machine}-{step_no}-{n}"

    def plan(self, jobs: Iterable[Job]) -> PlannerResult:
        drafts: List[Segment] = []
        skipped: List[SkippedJob] = []

        for job in jobs:
            job_drafts, skip = self._plan_job(job)
            if skip is not None:
                for s in job_drafts:
                    self.known.discard(s)
                skipped.append(skip)
                logger.info("Job %s skipped: %s", job.id, skip.reason)
                continue
            drafts.extend(job_drafts)

        logger.info("Planned %d draft segments, %d jobs skipped", len(drafts), len(skipped))
        return PlannerResult(drafts=drafts, skipped=skipped)

    def _plan_job(self, job: Job) -> tuple[List[Segment], Optional[SkippedJob]]:
        dependency_end = self.start_time
        job_drafts: List[Segment] = []

        existing = self._committed_by_job.get(job.id, [])
        credit: Dict[ResourceId, float] = defaultdict(float)
        latest_end: Dict[ResourceId, datetime] = {}
        for s in existing:
            credit[s.machine] += s.hours
            if s.machine not in latest_end or s.end > latest_end[s.machine]:
                latest_end[s.machine] = s.end

        for step_no, step in enumerate(job.steps, start=1):
            if step.machine not in self.machines:
                return job_drafts, SkippedJob(job, f"unknown machine: {step.machine}", SkipKind.UNKNOWN_RESOURCE)

            required = float(step.hours or 0.0)
            realized = min(required, credit[step.machine])
            credit[step.machine] -= realized
            remaining = required - realized
            prior_end = latest_end.get(step.machine)

            if remaining < REALIZED_TOLERANCE_HOURS:
                if prior_end is not None and prior_end > dependency_end:
                    dependency_end = prior_end
                continue

            search_start = dependency_end if prior_end is None else max(dependency_end, prior_end)
            search_start = next_valid_work_time(search_start)

            while remaining > _EPS_HOURS:
                search_start = next_valid_work_time(search_start)
                hours_left = hours_left_in_shift(search_start)
                if hours_left < MIN_SHIFT_REMAINDER_HOURS:
                    search_start = next_valid_work_time(shift_end(search_start) + timedelta(minutes=1))
                    continue

                duration = min(remaining, hours_left)
                proposed_end = search_start + timedelta(hours=duration)

                collision = self.known.first_collision(step.machine, search_start, proposed_end)
                if collision is not None:
                    logger.debug("%s collides with %s on %s", job.id, collision.id, step.machine)
                    search_start = collision.end
                    continue

                seg = Segment(
                    id=self._id_factory(job, step_no, step.machine, next(self._seq)),
                    job_id=job.id,
                    machine=step.machine,
                    start=search_start,
                    end=proposed_end,
                    step_index=step_no,
                    draft=True,
                )
                job_drafts.append(seg)
                self.known.add(seg)

                remaining -= seg.hours
                search_start = proposed_end

            dependency_end = search_start

        return job_drafts, None


# ----------------------------
# Metrics + planning run
# ----------------------------

@dataclass(frozen=True, slots=True)
class ScenarioMetrics:
    total_jobs: int = 0
    total_segments: int = 0
    total_hours: float = 0.0
    late_jobs: int = 0
    avg_lead_time_days: float = 0.0
    machine_hours: Dict[ResourceId, float] = field(default_factory=dict)


def compute_metrics(
    jobs: Sequence[Job],
    drafts: Sequence[Segment],
    machines: Iterable[ResourceId],
    plan_start: datetime,
) -> ScenarioMetrics:
    by_job: Dict[str, List[Segment]] = defaultdict(list)
    for s in drafts:
        by_job[s.job_id].append(s)

    late = 0
    lead_days: List[float] = []
    for j in jobs:
        segs = by_job.get(j.id)
        if not segs:
            continue
        last_end = max(s.end for s in segs)
        due = j.due_date
        if due is not None and last_end > due:
            late += 1
        origin = j.created_at or plan_start
        lead_days.append((last_end - origin).total_seconds() / 86400.0)

    machine_hours = {m: 0.0 for m in sorted(set(machines))}
    for s in drafts:
        machine_hours[s.machine] = machine_hours.get(s.machine, 0.0) + s.hours

    return ScenarioMetrics(
        total_jobs=len(jobs),
        total_segments=len(drafts),
        total_hours=sum(s.hours for s in drafts),
        late_jobs=late,
        avg_lead_time_days=(sum(lead_days) / len(lead_days)) if lead_days else 0.0,
        machine_hours=machine_hours,
    )


@dataclass(frozen=True, slots=True)
class PlanResult:
    segments: List[Segment]
    skipped: List[SkippedJob]
    metrics: ScenarioMetrics
    start_time: datetime
    config: StrategyConfig


def generate_plan(
    jobs: Iterable[Job],
    existing: Iterable[Segment],
    machines: Iterable[ResourceId],
    config: StrategyConfig = StrategyConfig(),
    *,
    now: Optional[datetime] = None,
    start_time: Optional[datetime] = None,
) -> PlanResult:
    """Rank, filter and place `jobs` around every committed segment in `existing`."""
    machines = list(machines)
    start = start_time or global_start(now or datetime.now())

    ranked, skipped = rank_jobs(jobs, config)
    committed = [s for s in existing if s.committed]

    planner = SegmentPlanner(machines, committed, start_time=start)
    drafts, unplaceable = planner.plan(ranked)

    metrics = compute_metrics(ranked, drafts, machines, start)
    logger.info(
        "Plan from %s: %d segments, %.1f h, %d late",
        start.isoformat(timespec="minutes"), metrics.total_segments, metrics.total_hours, metrics.late_jobs,
    )
    return PlanResult(
        segments=drafts,
        skipped=skipped + unplaceable,
        metrics=metrics,
        start_time=start,
        config=config,
    )


# ----------------------------
# Validation
# ----------------------------

def validate_schedule(segments: Iterable[Segment], *, check_calendar: bool = True) -> None:
    segs = list(segments)

    by_machine: Dict[ResourceId, List[Segment]] = defaultdict(list)
    for s in segs:
        by_machine[s.machine].append(s)
    for machine, lst in by_machine.items():
        lst.sort(key=lambda s: (s.start, s.end, s.id))
        for a, b in zip(lst, lst[1:]):
            if b.start < a.end:
                raise ValidationError(f"Overlap on {machine}: {a.id} [{a.start}-{a.end}] and {b.id} [{b.start}-{b.end}].")

    if check_calendar:
        bad = [
            s for s in segs
            if not is_working_time(s.start)
            or s.end.date() != s.start.date()
            or s.end > s.start.replace(hour=SHIFT_END_HOUR, minute=0, second=0, microsecond=0)
            or s.start.hour < SHIFT_START_HOUR
        ]
        if bad:
            sample = ", ".join(f"{s.id}@{s.start:%a %H:%M}" for s in bad[:10])
            raise ValidationError(f"Segments outside working hours (sample): {sample}")

    by_job_step: Dict[str, Dict[int, List[Segment]]] = defaultdict(lambda: defaultdict(list))
    for s in segs:
        if s.step_index > 0:
            by_job_step[s.job_id][s.step_index].append(s)
    for job_id, steps in by_job_step.items():
        order = sorted(steps)
        for i, nxt in zip(order, order[1:]):
            prev_end = max(s.end for s in steps[i])
            next_start = min(s.start for s in steps[nxt])
            if next_start < prev_end:
                raise ValidationError(f"Job {job_id}: step {nxt} starts before step {i} ends.")


# ----------------------------
# DataFrame helpers
# ----------------------------

def segments_to_df(segments: Iterable[Segment]) -> pd.DataFrame:
    return pd.DataFrame([{
        "ID": s.id,
        "JOB": s.job_id,
        "MACHINE": s.machine,
        "STEP": s.step_index,
        "START": s.start,
        "FINISH": s.end,
        "HOURS": s.hours,
        "DRAFT": s.draft,
        "LOCKED": s.locked,
    } for s in segments], columns=["ID", "JOB", "MACHINE", "STEP", "START", "FINISH", "HOURS", "DRAFT", "LOCKED"])


def skipped_to_df(skipped: Iterable[SkippedJob]) -> pd.DataFrame:
    return pd.DataFrame([{
        "JOB": sk.job.id,
        "KIND": sk.kind.value,
        "REASON": sk.reason,
    } for sk in skipped], columns=["JOB", "KIND", "REASON"])


def _missing(val) -> bool:
    if val is None:
        return True
    try:
        return bool(pd.isna(val))
    except (TypeError, ValueError):
        return False


def _ts(val) -> Optional[datetime]:
    return None if _missing(val) else pd.Timestamp(val).to_pydatetime()


def _text(val, default: str = "") -> str:
    return default if _missing(val) else str(val).strip()


def _flag(val) -> bool:
    return False if _missing(val) else bool(val)


def _int(val, default: int = 0) -> int:
    num = pd.to_numeric(val, errors="coerce")
    return default if _missing(num) else int(num)


def jobs_from_rows(rows) -> List[Job]:
    """Rows as produced by cleaning_utils.clean_routing (itertuples)."""
    jobs: List[Job] = []
    for r in rows:
        steps = tuple(
            Step(machine=normalize_code(m), hours=float(h))
            for m, h in (getattr(r, "STEPS", None) or ())
        )
        jobs.append(Job(
            id=_text(r.WO),
            steps=steps,
            status=normalize_code(getattr(r, "STATUS", "")),
            delivery_date=_ts(getattr(r, "DELIVERY_DATE", None)),
            project_delivery_date=_ts(getattr(r, "PROJECT_DELIVERY_DATE", None)),
            project_id=_text(getattr(r, "PROJECT", "")),
            material=_text(getattr(r, "MATERIAL", "")),
            treatment=_text(getattr(r, "TREATMENT", "")),
            has_model=_flag(getattr(r, "HAS_MODEL", False)),
            has_blueprint=_flag(getattr(r, "HAS_BLUEPRINT", False)),
            created_at=_ts(getattr(r, "CREATED_AT", None)),
            description=_text(getattr(r, "DESCRIPTION", "")),
        ))
    return jobs


def segments_from_rows(rows) -> List[Segment]:
    """Rows with ID, JOB, MACHINE, STEP, START, FINISH and optional LOCKED/STARTED/FINISHED."""
    out: List[Segment] = []
    for r in rows:
        locked = getattr(r, "LOCKED", None)
        out.append(Segment(
            id=_text(r.ID),
            job_id=_text(r.JOB),
            machine=normalize_code(r.MACHINE),
            start=_ts(r.START),
            end=_ts(r.FINISH),
            step_index=_int(getattr(r, "STEP", 0)),
            draft=False,
            locked=None if _missing(locked) else bool(locked),
            started=_flag(getattr(r, "STARTED", False)),
            finished=_flag(getattr(r, "FINISHED", False)),
        ))
    return out
