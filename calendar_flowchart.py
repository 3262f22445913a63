from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import matplotlib.pyplot as plt
from matplotlib.patches import Rectangle

from lanes import assign_lanes, machine_lane_counts
from scheduling_core import Segment
from work_calendar import is_working_time


def draw_segment_timeline(
    segments: Sequence[Segment],
    start: datetime,
    hours: int,
    out_path: Path,
    *,
    title: str = "Machine Timeline",
    machines: Optional[Iterable[str]] = None,
) -> None:
    """
    Render segments as bars, one row band per machine, split into lanes so
    overlapping work never draws on top of itself. Non-working hours are
    shaded.
    """
    segs = list(segments)
    lanes = assign_lanes(segs)
    lane_counts = machine_lane_counts(segs, lanes)
    machine_names: List[str] = list(machines) if machines is not None else sorted({s.machine for s in segs})
    if not machine_names:
        machine_names = ["(none)"]

    # Each machine gets a band as tall as its busiest day.
    band_base = {}
    y = 0
    for m in machine_names:
        band_base[m] = y
        y += max(1, lane_counts.get(m, 1))
    total_rows = max(1, y)

    end = start + timedelta(hours=hours)

    # Width grows with the window, capped so long horizons stay printable
    fig_w = max(12, min(24, hours * 0.25))
    fig_h = 2.5 + total_rows * 0.6
    fig, ax = plt.subplots(figsize=(fig_w, fig_h))

    ax.set_title(title, fontsize=14)
    ax.set_ylim(total_rows - 0.5, -0.5)
    ax.set_xlim(0, hours)
    ax.set_yticks([band_base[m] for m in machine_names])
    ax.set_yticklabels(machine_names)

    # Shade closed hours (nights, Sundays)
    for i in range(hours):
        if not is_working_time(start + timedelta(hours=i)):
            ax.add_patch(Rectangle((i, -0.5), 1, total_rows, alpha=0.12, linewidth=0))

    # Band separators
    for m in machine_names[1:]:
        ax.axhline(band_base[m] - 0.5, linewidth=0.6, alpha=0.4)

    # Label every 4 hours
    major_every = 4
    major_ticks = list(range(0, hours + 1, major_every))
    ax.set_xticks(major_ticks)
    ax.set_xticklabels([(start + timedelta(hours=h)).strftime("%a %m/%d\n%H:00") for h in major_ticks], fontsize=8)
    ax.grid(axis="x", linewidth=0.5, alpha=0.3)

    for s in segs:
        if s.machine not in band_base:
            continue
        seg_start = max(s.start, start)
        seg_end = min(s.end, end)
        if seg_end <= start or seg_start >= end:
            continue

        x0 = (seg_start - start).total_seconds() / 3600.0
        x1 = (seg_end - start).total_seconds() / 3600.0
        w = max(0.05, x1 - x0)

        row = band_base[s.machine] + lanes.get(s.id, 0)
        ax.add_patch(Rectangle(
            (x0, row - 0.35), w, 0.7,
            linewidth=1.0,
            fill=not s.draft,
            alpha=0.35 if not s.draft else 1.0,
            linestyle="--" if s.draft else "-",
        ))
        ax.text(x0 + w / 2, row, s.job_id, ha="center", va="center", fontsize=8, clip_on=True)

    # Cleanup
    ax.set_xlabel("Time")
    for spine in ["top", "right"]:
        ax.spines[spine].set_visible(False)

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=120, bbox_inches="tight")
    plt.close(fig)
