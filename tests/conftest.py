from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Sequence

import matplotlib

matplotlib.use("Agg")

import pytest

from edit_session import SaveOutcome, SaveReport
from scheduling_core import Job, Segment, Step

# 2026-01-12 is a Monday.
MON = datetime(2026, 1, 12)


def at(day_offset: int, hour: int, minute: int = 0) -> datetime:
    """Datetime `day_offset` days after Monday 2026-01-12 at hour:minute."""
    return (MON + timedelta(days=day_offset)).replace(hour=hour, minute=minute)


def job(job_id: str, *steps: tuple, **kw) -> Job:
    return Job(id=job_id, steps=tuple(Step(m, h) for m, h in steps), **kw)


def seg(seg_id: str, job_id: str, machine: str, start: datetime, end: datetime, **kw) -> Segment:
    return Segment(id=seg_id, job_id=job_id, machine=machine, start=start, end=end, **kw)


class FakeJobStore:
    """In-memory job store; ids in `fail_ids` are rejected on save."""

    def __init__(self, jobs=(), segments=(), machines=(), fail_ids=()):
        self.jobs: List[Job] = list(jobs)
        self.segments: List[Segment] = list(segments)
        self.machines: List[str] = list(machines)
        self.fail_ids = set(fail_ids)
        self.saved_calls: List[tuple] = []
        self.locks: Dict[str, bool] = {}
        self.scenarios: list = []
        self._next_id = 100

    def load_jobs(self) -> List[Job]:
        return list(self.jobs)

    def load_segments(self) -> List[Segment]:
        return list(self.segments)

    def load_machines(self) -> List[str]:
        return list(self.machines)

    def save_segments(self, created: Sequence[Segment], updated: Sequence[Segment]) -> SaveReport:
        self.saved_calls.append((list(created), list(updated)))
        outcomes = []
        for s in created:
            if s.id in self.fail_ids:
                outcomes.append(SaveOutcome(s.id, False, error="rejected"))
            else:
                self._next_id += 1
                outcomes.append(SaveOutcome(s.id, True, stored_id=str(self._next_id)))
        for s in updated:
            if s.id in self.fail_ids:
                outcomes.append(SaveOutcome(s.id, False, error="rejected"))
            else:
                outcomes.append(SaveOutcome(s.id, True))
        return SaveReport(outcomes=outcomes)

    def set_lock(self, segment_id: str, locked: bool) -> None:
        self.locks[segment_id] = locked

    def save_scenario(self, scenario) -> None:
        self.scenarios.append(scenario)


@pytest.fixture
def monday():
    return MON


@pytest.fixture
def fake_store():
    return FakeJobStore(machines=["M1", "M2"])
