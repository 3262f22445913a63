from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Protocol, Sequence, Tuple
import logging
import uuid

from scheduling_core import (
    Job,
    PersistenceError,
    ResourceId,
    ScheduleError,
    Segment,
    SegmentNotFoundError,
    is_effectively_locked,
)
from work_calendar import day_start

logger = logging.getLogger(__name__)

MIN_SEGMENT_DURATION = timedelta(minutes=10)

Snapshot = Dict[str, Segment]


# ----------------------------
# Job store boundary
# ----------------------------

class SaveOutcome(NamedTuple):
    segment_id: str
    ok: bool
    error: Optional[str] = None
    stored_id: Optional[str] = None  # id assigned by the store to a new segment


@dataclass
class SaveReport:
    outcomes: List[SaveOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def succeeded(self) -> List[SaveOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[SaveOutcome]:
        return [o for o in self.outcomes if not o.ok]


class JobStore(Protocol):
    """Persistence for jobs and segments; also the machine registry."""

    def load_jobs(self) -> List[Job]:
        ...

    def load_segments(self) -> List[Segment]:
        ...

    def load_machines(self) -> List[ResourceId]:
        ...

    def save_segments(self, created: Sequence[Segment], updated: Sequence[Segment]) -> SaveReport:
        """Create `created`, move `updated`; report success per segment id."""
        ...

    def set_lock(self, segment_id: str, locked: bool) -> None:
        ...


# ----------------------------
# Edit session
# ----------------------------

class EditSession:
    """
    Optimistic timeline state.

    `baseline` is what the store last accepted; `working` is what the user
    sees (committed + drafts). Every discrete action is preceded by a full
    snapshot of `working` on the undo stack; a new action clears redo.
    """

    def __init__(
        self,
        segments: Iterable[Segment] = (),
        *,
        store: Optional[JobStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        segs = list(segments)
        self._baseline: Snapshot = {s.id: s for s in segs if s.committed}
        self._working: Snapshot = {s.id: s for s in segs}
        self._undo: List[Snapshot] = []
        self._redo: List[Snapshot] = []
        self.store = store
        self._now = clock

    # --- views

    @property
    def working(self) -> List[Segment]:
        return list(self._working.values())

    @property
    def baseline(self) -> List[Segment]:
        return list(self._baseline.values())

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def get(self, segment_id: str) -> Segment:
        try:
            return self._working[segment_id]
        except KeyError:
            raise SegmentNotFoundError(f"Segment {segment_id} is not on the timeline.") from None

    def drafts(self) -> List[Segment]:
        return [s for s in self._working.values() if s.draft]

    def dirty_set(self) -> List[Segment]:
        out: List[Segment] = []
        for s in self._working.values():
            if s.draft:
                continue
            base = self._baseline.get(s.id)
            if base is not None and (base.start, base.end) != (s.start, s.end):
                out.append(s)
        return out

    def has_changes(self) -> bool:
        return bool(self.dirty_set() or self.drafts())

    def collisions(self) -> List[Tuple[Segment, Segment]]:
        """Overlapping pairs on the same machine. Advisory only."""
        by_machine: Dict[ResourceId, List[Segment]] = {}
        for s in self._working.values():
            by_machine.setdefault(s.machine, []).append(s)

        pairs: List[Tuple[Segment, Segment]] = []
        for machine in sorted(by_machine):
            lst = sorted(by_machine[machine], key=lambda s: (s.start, s.end, s.id))
            for i, a in enumerate(lst):
                for b in lst[i + 1:]:
                    if b.start >= a.end:
                        break
                    pairs.append((a, b))
        return pairs

    # --- history

    def snapshot(self) -> None:
        self._undo.append(dict(self._working))
        self._redo.clear()

    def begin_gesture(self) -> None:
        self.snapshot()

    def end_gesture(self) -> bool:
        """Close a drag/resize; a gesture that changed nothing leaves no history."""
        if self._undo and self._undo[-1] == self._working:
            self._undo.pop()
            return False
        return True

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(dict(self._working))
        self._restore(self._undo.pop())
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(dict(self._working))
        self._restore(self._redo.pop())
        return True

    def _restore(self, snap: Snapshot) -> None:
        # Lock flags are persisted immediately, so they survive undo/redo.
        restored: Snapshot = {}
        for sid, s in snap.items():
            cur = self._working.get(sid)
            if cur is not None and cur.locked != s.locked:
                s = replace(s, locked=cur.locked)
            restored[sid] = s
        self._working = restored

    # --- mutations

    def drag(self, segment_id: str, delta: timedelta, *, cascade: bool = False) -> Segment:
        """
        Shift a segment by `delta`, keeping its duration. No collision check.

        With `cascade`, unlocked segments on the same machine that start at or
        after this segment's end move by the same delta.
        """
        seg = self.get(segment_id)
        now = self._now()
        if is_effectively_locked(seg, now):
            logger.debug("Ignoring drag of locked segment %s", segment_id)
            return seg

        if cascade:
            for other in list(self._working.values()):
                if other.id == seg.id or other.machine != seg.machine:
                    continue
                if other.start >= seg.end and not is_effectively_locked(other, now):
                    self._working[other.id] = other.moved(other.start + delta, other.end + delta)

        moved = seg.moved(seg.start + delta, seg.end + delta)
        self._working[seg.id] = moved
        return moved

    def resize_start(self, segment_id: str, delta: timedelta) -> Segment:
        seg = self.get(segment_id)
        if is_effectively_locked(seg, self._now()):
            return seg

        new_start = max(seg.start + delta, day_start(seg.start))
        if seg.end - new_start < MIN_SEGMENT_DURATION:
            new_start = seg.end - MIN_SEGMENT_DURATION

        resized = seg.moved(new_start, seg.end)
        self._working[seg.id] = resized
        return resized

    def resize_end(self, segment_id: str, delta: timedelta) -> Segment:
        seg = self.get(segment_id)
        if is_effectively_locked(seg, self._now()):
            return seg

        day_end = day_start(seg.start) + timedelta(days=1)
        new_end = min(seg.end + delta, day_end)
        if new_end - seg.start < MIN_SEGMENT_DURATION:
            new_end = seg.start + MIN_SEGMENT_DURATION

        resized = seg.moved(seg.start, new_end)
        self._working[seg.id] = resized
        return resized

    def toggle_lock(self, segment_id: str, locked: bool) -> Segment:
        seg = self.get(segment_id)
        if seg.draft:
            logger.debug("Drafts cannot be locked (%s)", segment_id)
            return seg

        # Store first: a failed write leaves the session untouched.
        if self.store is not None:
            self.store.set_lock(seg.id, bool(locked))

        updated = replace(seg, locked=bool(locked))
        self._working[seg.id] = updated
        if seg.id in self._baseline:
            self._baseline[seg.id] = replace(self._baseline[seg.id], locked=bool(locked))
        return updated

    def add_drafts(self, segments: Iterable[Segment]) -> int:
        new = [s if s.draft else replace(s, draft=True) for s in segments]
        if not new:
            return 0
        self.snapshot()
        for s in new:
            self._working[s.id] = s
        return len(new)

    def add_segment(
        self,
        job_id: str,
        machine: ResourceId,
        start: datetime,
        end: datetime,
        *,
        step_index: int = 0,
    ) -> Segment:
        seg = Segment(
            id=f"manual-{uuid.uuid4().hex[:10]}",
            job_id=job_id,
            machine=machine,
            start=start,
            end=end,
            step_index=step_index,
            draft=True,
        )
        self.snapshot()
        self._working[seg.id] = seg
        return seg

    def remove_draft(self, segment_id: str) -> None:
        seg = self.get(segment_id)
        if not seg.draft:
            raise ScheduleError(f"Segment {segment_id} is committed; delete it through the job store.")
        self.snapshot()
        del self._working[segment_id]

    # --- persistence

    def save(self) -> SaveReport:
        """
        Submit dirty committed segments and drafts.

        Items the store accepted are folded into the baseline (drafts become
        committed under the store's id); rejected items stay dirty or draft
        for the next attempt. The batch is not atomic.
        """
        if self.store is None:
            raise PersistenceError("No job store attached to this session.")

        updated = self.dirty_set()
        created = self.drafts()
        if not updated and not created:
            return SaveReport()

        report = self.store.save_segments(created, updated)
        by_id = {o.segment_id: o for o in report.outcomes}

        for s in updated:
            o = by_id.get(s.id)
            if o is not None and o.ok:
                self._baseline[s.id] = s

        for s in created:
            o = by_id.get(s.id)
            if o is None or not o.ok:
                continue
            committed = replace(s, id=o.stored_id or s.id, draft=False)
            self._working = {
                (committed.id if k == s.id else k): (committed if k == s.id else v)
                for k, v in self._working.items()
            }
            self._baseline[committed.id] = committed

        if report.succeeded:
            # Snapshots may still hold pre-save draft ids.
            self._undo.clear()
            self._redo.clear()
        if report.failed:
            logger.warning(
                "Save partially failed: %d of %d segments rejected",
                len(report.failed), len(report.outcomes),
            )
        return report

    def discard(self) -> None:
        self._working = dict(self._baseline)
        self._undo.clear()
        self._redo.clear()
