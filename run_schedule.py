from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
import pandas as pd

from cleaning_utils import load_and_clean
from edit_session import EditSession
from exporters import export_timeline_json, write_excel
from lanes import machine_utilization
from scenarios import SavedScenario, suggest_name
from scheduling_core import (
    Job,
    ScheduleError,
    SchedulingStrategy,
    Segment,
    StrategyConfig,
    generate_plan,
    jobs_from_rows,
    normalize_code,
    validate_schedule,
)

logger = logging.getLogger("run_schedule")

UTILIZATION_WINDOW = timedelta(days=7)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Plan machining jobs onto the shop-floor timeline.")
    ap.add_argument("input_xlsx", nargs="?", help="Routing workbook (one row per step)")
    ap.add_argument("--from-db", action="store_true", help="Load jobs, machines and segments from SQL Server")
    ap.add_argument("--server", default=None, help="SQL Server host (with --from-db)")
    ap.add_argument("--database", default=None, help="SQL Server database (with --from-db)")
    ap.add_argument(
        "--strategy",
        choices=[s.value for s in SchedulingStrategy],
        default=SchedulingStrategy.DELIVERY_DATE.value,
    )
    ap.add_argument("--only-with-cad", action="store_true")
    ap.add_argument("--only-with-blueprint", action="store_true")
    ap.add_argument("--only-with-material", action="store_true")
    ap.add_argument("--require-treatment", action="store_true")
    ap.add_argument("--machines", default=None, help="Comma-separated machine registry (default: machines named in the routing)")
    ap.add_argument("--start", default=None, help="Plan start, e.g. '2026-01-12 06:00' (default: next working quarter hour)")
    ap.add_argument("--out-json", default=None, help="Timeline JSON output path")
    ap.add_argument("--out-xlsx", default=None, help="Excel report output path")
    ap.add_argument("--chart", default=None, help="PNG timeline chart output path")
    ap.add_argument("--chart-hours", type=int, default=72)
    ap.add_argument("--persist", action="store_true", help="Save drafts and the scenario back to SQL Server")
    ap.add_argument("--scenario-name", default=None)
    ap.add_argument("--log-level", default="INFO")
    return ap


def config_from_args(args: argparse.Namespace) -> StrategyConfig:
    return StrategyConfig(
        main_strategy=SchedulingStrategy(args.strategy),
        only_with_cad=args.only_with_cad,
        only_with_blueprint=args.only_with_blueprint,
        only_with_material=args.only_with_material,
        require_treatment=args.require_treatment,
    )


def machines_from_jobs(jobs: Sequence[Job]) -> List[str]:
    return sorted({st.machine for j in jobs for st in j.steps})


def parse_machines(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [normalize_code(m) for m in raw.split(",") if m.strip()]


def open_store(args: argparse.Namespace):
    # pyodbc needs the ODBC driver manager; only import it when the DB is used.
    from db_sqlserver import SqlServerConfig, SqlServerJobStore

    cfg = SqlServerConfig()
    overrides = {k: v for k, v in (("server", args.server), ("database", args.database)) if v}
    if overrides:
        cfg = replace(cfg, **overrides)
    return SqlServerJobStore(cfg)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.from_db and not args.input_xlsx:
        logger.error("Provide an input workbook or --from-db")
        return 2
    if args.persist and not args.from_db:
        logger.error("--persist requires --from-db")
        return 2

    store = None
    existing: List[Segment] = []

    # 1) Load jobs, machine registry and current timeline
    if args.from_db:
        store = open_store(args)
        jobs = store.load_jobs()
        existing = store.load_segments()
        machines = parse_machines(args.machines) or store.load_machines()
    else:
        in_path = Path(args.input_xlsx).expanduser().resolve()
        data = load_and_clean(in_path)
        jobs = jobs_from_rows(data.itertuples(index=False))
        machines = parse_machines(args.machines) or machines_from_jobs(jobs)

    logger.info("Loaded %d jobs, %d machines, %d existing segments", len(jobs), len(machines), len(existing))

    # 2) Plan
    start_time = pd.to_datetime(args.start).to_pydatetime() if args.start else None
    plan = generate_plan(jobs, existing, machines, config_from_args(args), start_time=start_time)

    for sk in plan.skipped:
        logger.info("Skipped %s (%s): %s", sk.job.id, sk.kind.value, sk.reason)

    # 3) Validate drafts against the calendar, and against committed segments for overlaps
    try:
        validate_schedule(plan.segments)
        validate_schedule([s for s in existing if s.committed] + plan.segments, check_calendar=False)
    except ScheduleError as e:
        logger.error("Plan failed validation: %s", e)
        return 1

    # 4) Reports
    window_end = plan.start_time + UTILIZATION_WINDOW
    utilization = {m: machine_utilization(plan.segments, m, plan.start_time, window_end) for m in machines}

    if args.out_json:
        export_timeline_json(plan.segments, Path(args.out_json), start_time=plan.start_time, machines=machines, jobs=jobs)
    if args.out_xlsx:
        write_excel(Path(args.out_xlsx), plan, utilization=utilization)
    if args.chart:
        from calendar_flowchart import draw_segment_timeline

        draw_segment_timeline(
            plan.segments,
            plan.start_time,
            args.chart_hours,
            Path(args.chart),
            title=f"Plan ({plan.config.main_strategy.value})",
            machines=machines,
        )

    # 5) Persist drafts through an edit session so partial failures stay visible
    if args.persist and store is not None:
        session = EditSession(existing, store=store)
        session.add_drafts(plan.segments)
        report = session.save()
        if report.failed:
            for o in report.failed:
                logger.error("Segment %s not saved: %s", o.segment_id, o.error)

        name = args.scenario_name or suggest_name(0, plan.config.main_strategy.value)
        scenario = SavedScenario.from_plan(name, plan)
        if report.ok:
            scenario.mark_applied(datetime.now())
        store.save_scenario(scenario)
        return 0 if report.ok else 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
