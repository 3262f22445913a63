from __future__ import annotations

import pandas as pd
from pathlib import Path
from datetime import datetime
from typing import Dict, Iterable, Optional, Sequence
import json

from lanes import assign_lanes, machine_lane_counts, row_height
from scheduling_core import (
    Job,
    PlanResult,
    Segment,
    priority_level,
    segments_to_df,
    skipped_to_df,
)


def metrics_to_df(plan: PlanResult) -> pd.DataFrame:
    m = plan.metrics
    return pd.DataFrame([
        {"Metric": "Strategy", "Value": plan.config.main_strategy.value},
        {"Metric": "Plan start", "Value": plan.start_time.isoformat(timespec="minutes")},
        {"Metric": "Jobs considered", "Value": m.total_jobs},
        {"Metric": "Draft segments", "Value": m.total_segments},
        {"Metric": "Scheduled hours", "Value": round(m.total_hours, 2)},
        {"Metric": "Late jobs", "Value": m.late_jobs},
        {"Metric": "Avg lead time (days)", "Value": round(m.avg_lead_time_days, 2)},
    ])


def write_excel(out_path, plan: PlanResult, *, utilization: Optional[Dict[str, int]] = None) -> None:
    notes = pd.DataFrame([
        {"Note": "Working window is Mon-Sat 06:00-22:00; steps are split across shifts as needed."},
        {"Note": "A job whose routing names an unknown machine is skipped entirely (no partial schedule)."},
        {"Note": "Segments are drafts until saved; committed segments are never re-planned."},
    ])

    machine_df = pd.DataFrame([
        {
            "MACHINE": machine,
            "PLANNED_HOURS": round(hours, 2),
            "UTILIZATION_PCT": (utilization or {}).get(machine),
        }
        for machine, hours in sorted(plan.metrics.machine_hours.items())
    ], columns=["MACHINE", "PLANNED_HOURS", "UTILIZATION_PCT"])

    with pd.ExcelWriter(out_path, engine="openpyxl") as xw:
        segments_to_df(plan.segments).to_excel(xw, index=False, sheet_name="Segments")
        skipped_to_df(plan.skipped).to_excel(xw, index=False, sheet_name="Skipped")
        metrics_to_df(plan).to_excel(xw, index=False, sheet_name="Metrics")
        machine_df.to_excel(xw, index=False, sheet_name="Machines")
        notes.to_excel(xw, index=False, sheet_name="Notes")


def build_timeline_payload(
    segments: Sequence[Segment],
    *,
    start_time: datetime | str,
    machines: Optional[Iterable[str]] = None,
    jobs: Optional[Iterable[Job]] = None,
    today: Optional[datetime] = None,
) -> dict:
    segs = list(segments)
    lanes = assign_lanes(segs)
    lane_counts = machine_lane_counts(segs, lanes)
    jobs_by_id = {j.id: j for j in (jobs or [])}

    machine_names = list(machines) if machines is not None else sorted({s.machine for s in segs})
    groups = [
        {
            "id": m,
            "label": m,
            "lanes": lane_counts.get(m, 1),
            "height": row_height(lane_counts.get(m, 1)),
        }
        for m in machine_names
    ]

    items = []
    for s in sorted(segs, key=lambda s: (s.machine, s.start, s.id)):
        job = jobs_by_id.get(s.job_id)
        due = job.due_date if job else None
        items.append({
            "id": s.id,
            "group": s.machine,
            "lane": lanes.get(s.id, 0),
            "start": s.start.isoformat(),
            "end": s.end.isoformat(),
            "label": f"{s.job_id} ({s.hours:.2f} h)",
            "data": {
                "job": s.job_id,
                "step": s.step_index,
                "draft": s.draft,
                "locked": s.locked,
                "description": job.description if job else "",
                "delivery_date": due.isoformat() if due else None,
                "priority": priority_level(due, today).value if job else None,
            },
        })

    return {
        "meta": {
            "generated_at": datetime.now().isoformat(timespec="seconds"),
            "start_time": (start_time.isoformat() if isinstance(start_time, datetime) else str(start_time)),
            "segment_count": len(items),
        },
        "groups": groups,
        "items": items,
    }


def export_timeline_json(
    segments: Sequence[Segment],
    out_json_path: str | Path,
    *,
    start_time: datetime | str,
    machines: Optional[Iterable[str]] = None,
    jobs: Optional[Iterable[Job]] = None,
) -> None:
    payload = build_timeline_payload(segments, start_time=start_time, machines=machines, jobs=jobs)
    Path(out_json_path).write_text(json.dumps(payload, indent=2), encoding="utf-8")
