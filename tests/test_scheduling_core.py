from datetime import date, datetime

import pandas as pd
import pytest

from conftest import at, job, seg
from scheduling_core import (
    Job,
    MachineIndex,
    PriorityLevel,
    SchedulingStrategy,
    Segment,
    SegmentPlanner,
    SkipKind,
    StrategyConfig,
    ValidationError,
    compare_jobs,
    compute_metrics,
    generate_plan,
    is_effectively_locked,
    jobs_from_rows,
    priority_level,
    rank_jobs,
    segments_from_rows,
    segments_to_df,
    skipped_to_df,
    status_tier,
    validate_schedule,
)
from work_calendar import is_working_time


def _plan(jobs, start, machines=("M1", "M2"), known=()):
    return SegmentPlanner(machines, known, start_time=start).plan(jobs)


def _spans(segments):
    return [(s.machine, s.start, s.end) for s in segments]


class TestSegment:

    def test_end_must_follow_start(self):
        with pytest.raises(ValueError):
            seg("x", "J", "M1", at(0, 8), at(0, 8))

    def test_hours_and_overlap(self):
        s = seg("x", "J", "M1", at(0, 8), at(0, 9, 30))
        assert s.hours == pytest.approx(1.5)
        assert s.overlaps(at(0, 9), at(0, 10))
        assert not s.overlaps(at(0, 9, 30), at(0, 10))

    def test_effective_lock(self):
        now = at(0, 12)
        assert not is_effectively_locked(seg("d", "J", "M1", at(0, 8), at(0, 9), draft=True, locked=True), now)
        assert is_effectively_locked(seg("a", "J", "M1", at(1, 8), at(1, 9), locked=True), now)
        assert not is_effectively_locked(seg("b", "J", "M1", at(0, 8), at(0, 9), locked=False), now)
        assert is_effectively_locked(seg("c", "J", "M1", at(0, 8), at(0, 9)), now)
        assert is_effectively_locked(seg("e", "J", "M1", at(1, 8), at(1, 9), started=True), now)
        assert not is_effectively_locked(seg("f", "J", "M1", at(1, 8), at(1, 9)), now)


class TestRanking:

    def test_missing_steps_are_skipped_first(self):
        ordered, skipped = rank_jobs([job("EMPTY"), job("J1", ("M1", 1))])
        assert [j.id for j in ordered] == ["J1"]
        assert skipped[0].kind is SkipKind.NO_STEP_PLAN
        assert skipped[0].job.id == "EMPTY"

    def test_delivery_date_uses_status_tier_then_date(self):
        jobs = [
            job("C", ("M1", 1), status="A7-AWAITING MATERIAL", delivery_date=at(0, 8)),
            job("B", ("M1", 1), status="A8-MATERIAL AVAILABLE", delivery_date=at(9, 8)),
            job("A", ("M1", 1), status="A8-MATERIAL AVAILABLE", delivery_date=at(3, 8)),
            job("D", ("M1", 1), status="SOMETHING ELSE"),
        ]
        ordered, _ = rank_jobs(jobs)
        assert [j.id for j in ordered] == ["A", "B", "C", "D"]

    def test_missing_delivery_sorts_last_and_id_breaks_ties(self):
        jobs = [job("B", ("M1", 1)), job("A", ("M1", 1)), job("Z", ("M1", 1), delivery_date=at(30, 8))]
        ordered, _ = rank_jobs(jobs)
        assert [j.id for j in ordered] == ["Z", "A", "B"]

    def test_delivery_falls_back_to_project_date(self):
        j = job("J", ("M1", 1), project_delivery_date=at(2, 8))
        assert j.due_date == at(2, 8)

    def test_fab_time_and_fast_track(self):
        jobs = [job("S", ("M1", 1)), job("L", ("M1", 4), ("M2", 4)), job("M", ("M1", 3))]
        longest, _ = rank_jobs(jobs, StrategyConfig(main_strategy=SchedulingStrategy.FAB_TIME))
        shortest, _ = rank_jobs(jobs, StrategyConfig(main_strategy=SchedulingStrategy.FAST_TRACK))
        assert [j.id for j in longest] == ["L", "M", "S"]
        assert [j.id for j in shortest] == ["S", "M", "L"]

    def test_critical_path_puts_treatments_first(self):
        jobs = [job("A", ("M1", 1), treatment="N/A"), job("B", ("M1", 1), treatment="Anodize")]
        ordered, _ = rank_jobs(jobs, StrategyConfig(main_strategy=SchedulingStrategy.CRITICAL_PATH))
        assert [j.id for j in ordered] == ["B", "A"]

    def test_grouping_strategies(self):
        jobs = [
            job("A", ("M1", 1), project_id="P2", material="STEEL", treatment="ZINC"),
            job("B", ("M1", 1), project_id="P1", material="ALU", treatment="ANODIZE"),
        ]
        for strategy in (
            SchedulingStrategy.PROJECT_GROUP,
            SchedulingStrategy.MATERIAL_OPTIMIZATION,
            SchedulingStrategy.TREATMENTS,
        ):
            ordered, _ = rank_jobs(jobs, StrategyConfig(main_strategy=strategy))
            assert [j.id for j in ordered] == ["B", "A"]

    def test_filters(self):
        jobs = [
            job("OK", ("M1", 1), has_model=True, has_blueprint=True, status="A8-MATERIAL AVAILABLE", treatment="Paint"),
            job("NOCAD", ("M1", 1), has_blueprint=True),
            job("NOMAT", ("M1", 1), has_model=True, has_blueprint=True, status="A7-AWAITING MATERIAL"),
        ]
        cfg = StrategyConfig(only_with_cad=True, only_with_blueprint=True, only_with_material=True, require_treatment=True)
        ordered, skipped = rank_jobs(jobs, cfg)
        assert [j.id for j in ordered] == ["OK"]
        reasons = {sk.job.id: sk.reason for sk in skipped}
        assert reasons == {"NOCAD": "no 3-D model", "NOMAT": "material not available"}
        assert all(sk.kind is SkipKind.FILTERED_OUT for sk in skipped)

    def test_compare_jobs(self):
        a = job("A", ("M1", 1), delivery_date=at(1, 8))
        b = job("B", ("M1", 1), delivery_date=at(2, 8))
        assert compare_jobs(a, b) == -1
        assert compare_jobs(b, a) == 1
        assert compare_jobs(a, a) == 0

    def test_status_tier_normalizes(self):
        assert status_tier(" a8-material   available ") == 2
        assert status_tier("A0-NEW PROJECT") == 5
        assert status_tier(None) == 99

    @pytest.mark.parametrize(
        "delivery, expected",
        [
            (date(2026, 1, 11), PriorityLevel.CRITICAL),
            (date(2026, 1, 12), PriorityLevel.SOON),
            (date(2026, 1, 15), PriorityLevel.SOON),
            (date(2026, 1, 22), PriorityLevel.NORMAL),
            (date(2026, 1, 23), PriorityLevel.PLENTY),
            (None, PriorityLevel.PLENTY),
        ],
    )
    def test_priority_level(self, delivery, expected):
        assert priority_level(delivery, datetime(2026, 1, 12, 17, 0)) is expected


class TestSegmentPlanner:

    def test_step_split_across_shift_end(self):
        drafts, skipped = _plan([job("J1", ("M1", 5), ("M2", 3))], at(0, 20))
        assert skipped == []
        assert _spans(drafts) == [
            ("M1", at(0, 20), at(0, 22)),
            ("M1", at(1, 6), at(1, 9)),
            ("M2", at(1, 9), at(1, 12)),
        ]
        assert [s.step_index for s in drafts] == [1, 1, 2]
        assert all(s.draft for s in drafts)

    def test_second_job_waits_for_machine(self):
        drafts, _ = _plan([job("A", ("M1", 2)), job("B", ("M1", 2))], at(2, 6))
        a = [s for s in drafts if s.job_id == "A"]
        b = [s for s in drafts if s.job_id == "B"]
        assert _spans(a) == [("M1", at(2, 6), at(2, 8))]
        assert b[0].start >= at(2, 8)

    def test_unknown_machine_skips_whole_job(self):
        drafts, skipped = _plan([job("X", ("M1", 1), ("GHOST", 1))], at(0, 6))
        assert drafts == []
        assert skipped[0].kind is SkipKind.UNKNOWN_RESOURCE
        assert skipped[0].reason == "unknown machine: GHOST"

    def test_skipped_job_leaves_no_obstacles(self):
        drafts, _ = _plan([job("A", ("M1", 2), ("GHOST", 1)), job("B", ("M1", 2))], at(2, 6))
        assert _spans(drafts) == [("M1", at(2, 6), at(2, 8))]

    def test_routes_around_known_segments(self):
        known = [seg("fixed", "OTHER", "M1", at(2, 7), at(2, 9), locked=True)]
        drafts, _ = _plan([job("A", ("M1", 2))], at(2, 6), known=known)
        assert _spans(drafts) == [("M1", at(2, 9), at(2, 11))]

    def test_short_shift_remainder_is_skipped(self):
        drafts, _ = _plan([job("A", ("M1", 1))], at(0, 21, 50))
        assert _spans(drafts) == [("M1", at(1, 6), at(1, 7))]

    def test_saturday_rolls_to_monday(self):
        drafts, _ = _plan([job("A", ("M1", 3))], at(5, 21))
        assert _spans(drafts) == [("M1", at(5, 21), at(5, 22)), ("M1", at(7, 6), at(7, 8))]

    def test_realized_hours_satisfy_step(self):
        done = seg("100", "J1", "M1", at(0, 6), at(0, 11), step_index=1, started=True)
        drafts, _ = _plan([job("J1", ("M1", 5), ("M2", 3))], at(0, 12), known=[done])
        assert _spans(drafts) == [("M2", at(0, 12), at(0, 15))]

    def test_partial_credit_plans_the_rest(self):
        done = seg("100", "J1", "M1", at(0, 6), at(0, 8), step_index=1, started=True)
        drafts, _ = _plan([job("J1", ("M1", 5))], at(0, 7), known=[done])
        assert _spans(drafts) == [("M1", at(0, 8), at(0, 11))]

    def test_credit_is_not_reused_for_repeat_visit(self):
        done = seg("100", "J1", "M1", at(0, 6), at(0, 8), step_index=1, finished=True)
        drafts, _ = _plan([job("J1", ("M1", 2), ("M2", 1), ("M1", 2))], at(0, 10), known=[done])
        assert _spans(drafts) == [("M2", at(0, 10), at(0, 11)), ("M1", at(0, 11), at(0, 13))]

    def test_default_ids_are_unique(self):
        drafts, _ = _plan([job("J1", ("M1", 20))], at(0, 6))
        ids = [s.id for s in drafts]
        assert len(ids) == len(set(ids))
        assert ids[0] == "draft-J1-M1-1-1"

    def test_machine_index_first_collision(self):
        idx = MachineIndex([
            seg("b", "J", "M1", at(0, 10), at(0, 12)),
            seg("a", "J", "M1", at(0, 6), at(0, 8)),
        ])
        assert idx.first_collision("M1", at(0, 7), at(0, 11)).id == "a"
        assert idx.first_collision("M1", at(0, 8), at(0, 10)) is None
        assert idx.first_collision("M2", at(0, 6), at(0, 22)) is None
        idx.discard(seg("a", "J", "M1", at(0, 6), at(0, 8)))
        assert len(idx) == 1


class TestPlanProperties:

    @pytest.fixture
    def plan(self):
        jobs = [
            job("J1", ("M1", 5), ("M2", 3)),
            job("J2", ("M2", 4), ("M1", 2)),
            job("J3", ("M1", 10.5)),
            job("J4", ("M2", 0.75), ("M1", 0.5), ("M2", 6)),
            job("J5", ("M3", 1)),
        ]
        existing = [seg("fixed", "OLD", "M1", at(0, 12), at(0, 14), locked=True)]
        return jobs, existing, generate_plan(jobs, existing, ["M1", "M2"], start_time=at(0, 9))

    def test_valid_schedule(self, plan):
        _, existing, result = plan
        validate_schedule(result.segments)
        validate_schedule(existing + result.segments, check_calendar=False)

    def test_every_scheduled_job_is_complete(self, plan):
        jobs, _, result = plan
        for j in jobs:
            hours = sum(s.hours for s in result.segments if s.job_id == j.id)
            if j.id == "J5":
                assert hours == 0
            else:
                assert hours == pytest.approx(j.total_hours)

    def test_segments_stay_in_calendar(self, plan):
        _, _, result = plan
        for s in result.segments:
            assert is_working_time(s.start)
            assert s.end.date() == s.start.date()
            assert s.end.hour < 22 or (s.end.hour == 22 and s.end.minute == 0)

    def test_skips_reported(self, plan):
        _, _, result = plan
        assert [sk.job.id for sk in result.skipped] == ["J5"]
        df = skipped_to_df(result.skipped)
        assert df.loc[0, "KIND"] == "UNKNOWN_RESOURCE"


class TestGeneratePlan:

    def test_unlocked_committed_segments_are_not_overlapped(self):
        planned = seg("c1", "OTHER", "M1", at(2, 6), at(2, 8))
        stale = seg("old-draft", "OTHER", "M1", at(2, 8), at(2, 10), draft=True)
        result = generate_plan([job("A", ("M1", 2))], [planned, stale], ["M1"], start_time=at(2, 6))
        assert _spans(result.segments) == [("M1", at(2, 8), at(2, 10))]
        validate_schedule([planned] + result.segments, check_calendar=False)

    def test_own_committed_hours_are_not_booked_twice(self):
        own = seg("c1", "A", "M1", at(2, 6), at(2, 8), step_index=1)
        result = generate_plan([job("A", ("M1", 2))], [own], ["M1"], start_time=at(2, 6))
        assert result.segments == []
        assert sum(s.hours for s in [own] + result.segments if s.job_id == "A") == pytest.approx(2.0)

    def test_start_defaults_to_global_start(self):
        result = generate_plan([job("A", ("M1", 1))], [], ["M1"], now=at(0, 9, 2))
        assert result.start_time == at(0, 9, 15)
        assert result.segments[0].start == at(0, 9, 15)

    def test_metrics(self):
        jobs = [job("A", ("M1", 3), delivery_date=at(0, 8)), job("B", ("M2", 1), created_at=at(0, 6))]
        result = generate_plan(jobs, [], ["M1", "M2", "M3"], start_time=at(0, 6))
        m = result.metrics
        assert m.total_jobs == 2
        assert m.total_segments == 2
        assert m.total_hours == pytest.approx(4.0)
        assert m.late_jobs == 1
        # A: 3h from plan start, B: 1h from creation
        assert m.avg_lead_time_days == pytest.approx((3 + 1) / 2 / 24)
        assert m.machine_hours == {"M1": 3.0, "M2": 1.0, "M3": 0.0}

    def test_compute_metrics_empty(self):
        m = compute_metrics([], [], ["M1"], at(0, 6))
        assert m.total_segments == 0
        assert m.avg_lead_time_days == 0.0


class TestValidateSchedule:

    def test_overlap(self):
        with pytest.raises(ValidationError, match="Overlap on M1"):
            validate_schedule([
                seg("a", "J1", "M1", at(0, 6), at(0, 8)),
                seg("b", "J2", "M1", at(0, 7), at(0, 9)),
            ])

    def test_touching_is_fine(self):
        validate_schedule([
            seg("a", "J1", "M1", at(0, 6), at(0, 8)),
            seg("b", "J2", "M1", at(0, 8), at(0, 9)),
        ])

    def test_outside_calendar(self):
        with pytest.raises(ValidationError, match="outside working hours"):
            validate_schedule([seg("a", "J1", "M1", at(6, 8), at(6, 9))])
        validate_schedule([seg("a", "J1", "M1", at(6, 8), at(6, 9))], check_calendar=False)

    def test_step_order(self):
        with pytest.raises(ValidationError, match="step 2"):
            validate_schedule([
                seg("a", "J1", "M1", at(0, 8), at(0, 10), step_index=1),
                seg("b", "J1", "M2", at(0, 9), at(0, 11), step_index=2),
            ])


class TestRowConversion:

    def test_jobs_from_rows(self):
        df = pd.DataFrame([
            {
                "WO": "1001", "STEPS": (("M1", 2.0), ("M2", 1.5)), "STATUS": "a8-material available",
                "DELIVERY_DATE": pd.Timestamp("2026-01-20"), "PROJECT_DELIVERY_DATE": pd.NaT,
                "PROJECT": "P1", "MATERIAL": "ALU", "TREATMENT": "", "HAS_MODEL": True,
                "HAS_BLUEPRINT": float("nan"), "CREATED_AT": pd.NaT, "DESCRIPTION": None,
            },
        ])
        (j,) = jobs_from_rows(df.itertuples(index=False))
        assert isinstance(j, Job)
        assert [(s.machine, s.hours) for s in j.steps] == [("M1", 2.0), ("M2", 1.5)]
        assert j.status == "A8-MATERIAL AVAILABLE"
        assert j.delivery_date == datetime(2026, 1, 20)
        assert j.project_delivery_date is None
        assert j.has_model is True
        assert j.has_blueprint is False
        assert j.description == ""

    def test_segments_round_trip_through_frames(self):
        segs = [seg("1", "J1", "M1", at(0, 6), at(0, 8), step_index=2, locked=True)]
        df = segments_to_df(segs)
        assert list(df.columns) == ["ID", "JOB", "MACHINE", "STEP", "START", "FINISH", "HOURS", "DRAFT", "LOCKED"]
        (back,) = segments_from_rows(df.itertuples(index=False))
        assert isinstance(back, Segment)
        assert (back.id, back.machine, back.start, back.end, back.step_index, back.locked) == (
            "1", "M1", at(0, 6), at(0, 8), 2, True,
        )
        assert back.committed
