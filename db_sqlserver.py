# db_sqlserver.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, List, Sequence
import json
import logging

import pandas as pd
import pyodbc

from edit_session import SaveOutcome, SaveReport
from scheduling_core import Job, Segment, jobs_from_rows, normalize_code, segments_from_rows
from scenarios import SavedScenario

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SqlServerConfig:
    driver: str = "ODBC Driver 17 for SQL Server"
    server: str = "dscsqc"
    database: str = "ShopPlanning"
    trusted_connection: bool = True
    max_workers: int = 8

    def conn_str(self) -> str:
        parts = [
            f"DRIVER={{{self.driver}}};",
            f"SERVER={self.server};",
            f"DATABASE={self.database};",
        ]
        if self.trusted_connection:
            parts.append("Trusted_Connection=yes;")
        return "".join(parts)


def read_frame(conn_str: str, sql: str, params: Sequence[Any] = ()) -> pd.DataFrame:
    with pyodbc.connect(conn_str) as cn:
        cur = cn.cursor()
        cur.execute(sql, tuple(params))
        rows = cur.fetchall()
        cols = [c[0] for c in cur.description]
    return pd.DataFrame.from_records([tuple(r) for r in rows], columns=cols)


MACHINES_SQL = """
    SELECT name
    FROM dbo.machines
    WHERE active = 1
    ORDER BY name;
"""

ORDERS_SQL = """
    SELECT o.id, o.status, o.delivery_date, p.delivery_date AS project_delivery_date,
           o.project_id, o.material, o.treatment, o.has_model, o.has_blueprint,
           o.created_at, o.description
    FROM dbo.production_orders o
    LEFT JOIN dbo.projects p ON p.id = o.project_id;
"""

STEPS_SQL = """
    SELECT order_id, step_no, machine, hours
    FROM dbo.order_steps
    ORDER BY order_id, step_no;
"""

SEGMENTS_SQL = """
    SELECT id, order_id, machine, register, planned_date, planned_end, locked, check_in, check_out
    FROM dbo.planning
    ORDER BY machine, planned_date;
"""

INSERT_SEGMENT_SQL = """
    INSERT INTO dbo.planning (order_id, machine, register, planned_date, planned_end, status)
    OUTPUT CAST(INSERTED.id AS NVARCHAR(64))
    VALUES (?, ?, ?, ?, ?, 'pending');
"""

UPDATE_SEGMENT_SQL = """
    UPDATE dbo.planning
    SET planned_date = ?, planned_end = ?
    WHERE id = ?;
"""

UPDATE_LOCK_SQL = "UPDATE dbo.planning SET locked = ? WHERE id = ?;"

INSERT_SCENARIO_SQL = """
    INSERT INTO dbo.planning_scenarios (id, name, strategy, config, tasks, skipped, metrics, created_by, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
"""


def routing_frame(orders_df: pd.DataFrame, steps_df: pd.DataFrame) -> pd.DataFrame:
    """Shape DB rows like cleaning_utils.clean_routing output."""
    steps_by_order: dict[str, list[tuple[str, float]]] = {}
    if not steps_df.empty:
        for r in steps_df.sort_values(["order_id", "step_no"]).itertuples(index=False):
            if r.machine is None or pd.isna(r.hours) or float(r.hours) <= 0:
                continue
            steps_by_order.setdefault(str(r.order_id), []).append((normalize_code(r.machine), float(r.hours)))

    return pd.DataFrame([{
        "WO": str(r.id),
        "STEPS": tuple(steps_by_order.get(str(r.id), ())),
        "STATUS": r.status,
        "DELIVERY_DATE": pd.to_datetime(r.delivery_date, errors="coerce"),
        "PROJECT_DELIVERY_DATE": pd.to_datetime(r.project_delivery_date, errors="coerce"),
        "PROJECT": r.project_id,
        "MATERIAL": r.material,
        "TREATMENT": r.treatment,
        "HAS_MODEL": r.has_model,
        "HAS_BLUEPRINT": r.has_blueprint,
        "CREATED_AT": pd.to_datetime(r.created_at, errors="coerce"),
        "DESCRIPTION": r.description,
    } for r in orders_df.itertuples(index=False)])


def segment_frame(planning_df: pd.DataFrame) -> pd.DataFrame:
    if planning_df.empty:
        return pd.DataFrame(columns=["ID", "JOB", "MACHINE", "STEP", "START", "FINISH", "LOCKED", "STARTED", "FINISHED"])
    return pd.DataFrame({
        "ID": planning_df["id"].astype(str),
        "JOB": planning_df["order_id"].astype(str),
        "MACHINE": planning_df["machine"].map(normalize_code),
        "STEP": pd.to_numeric(planning_df["register"], errors="coerce").fillna(0).astype(int),
        "START": pd.to_datetime(planning_df["planned_date"]),
        "FINISH": pd.to_datetime(planning_df["planned_end"]),
        "LOCKED": planning_df["locked"],
        "STARTED": planning_df["check_in"].notna(),
        "FINISHED": planning_df["check_out"].notna(),
    })


class SqlServerJobStore:
    """
    Job store + machine registry backed by SQL Server.

    Segment writes are issued one statement per segment, in parallel, each
    on its own connection and transaction; there is no batch transaction.
    """

    def __init__(self, config: SqlServerConfig = SqlServerConfig()):
        self.config = config
        self.conn_str = config.conn_str()

    def load_machines(self) -> List[str]:
        df = read_frame(self.conn_str, MACHINES_SQL)
        return [normalize_code(x) for x in df["name"].tolist()] if not df.empty else []

    def load_jobs(self) -> List[Job]:
        orders = read_frame(self.conn_str, ORDERS_SQL)
        steps = read_frame(self.conn_str, STEPS_SQL)
        if orders.empty:
            return []
        return jobs_from_rows(routing_frame(orders, steps).itertuples(index=False))

    def load_segments(self) -> List[Segment]:
        df = segment_frame(read_frame(self.conn_str, SEGMENTS_SQL))
        # Rows with missing or inverted times cannot be placed on a timeline.
        valid = df[df["START"].notna() & df["FINISH"].notna() & (df["FINISH"] > df["START"])]
        if len(valid) != len(df):
            logger.warning("Ignoring %d planning rows with invalid times", len(df) - len(valid))
        return segments_from_rows(valid.itertuples(index=False))

    def _create(self, seg: Segment) -> SaveOutcome:
        try:
            with pyodbc.connect(self.conn_str) as conn:
                cur = conn.cursor()
                cur.execute(INSERT_SEGMENT_SQL, (seg.job_id, seg.machine, str(seg.step_index), seg.start, seg.end))
                row = cur.fetchone()
                conn.commit()
        except pyodbc.Error as e:
            logger.error("Create failed for %s: %s", seg.id, e)
            return SaveOutcome(seg.id, False, error=str(e))
        return SaveOutcome(seg.id, True, stored_id=(str(row[0]) if row else None))

    def _update(self, seg: Segment) -> SaveOutcome:
        try:
            with pyodbc.connect(self.conn_str) as conn:
                cur = conn.cursor()
                cur.execute(UPDATE_SEGMENT_SQL, (seg.start, seg.end, seg.id))
                touched = cur.rowcount
                conn.commit()
        except pyodbc.Error as e:
            logger.error("Update failed for %s: %s", seg.id, e)
            return SaveOutcome(seg.id, False, error=str(e))
        if touched == 0:
            return SaveOutcome(seg.id, False, error="segment no longer exists")
        return SaveOutcome(seg.id, True)

    def save_segments(self, created: Sequence[Segment], updated: Sequence[Segment]) -> SaveReport:
        jobs = [(self._create, s) for s in created] + [(self._update, s) for s in updated]
        if not jobs:
            return SaveReport()

        with ThreadPoolExecutor(max_workers=max(1, int(self.config.max_workers))) as pool:
            futures = [pool.submit(fn, seg) for fn, seg in jobs]
            outcomes = [f.result() for f in futures]

        report = SaveReport(outcomes=outcomes)
        logger.info("Saved %d/%d segments", len(report.succeeded), len(outcomes))
        return report

    def set_lock(self, segment_id: str, locked: bool) -> None:
        with pyodbc.connect(self.conn_str) as conn:
            cur = conn.cursor()
            cur.execute(UPDATE_LOCK_SQL, (1 if locked else 0, segment_id))
            conn.commit()

    def save_scenario(self, scenario: SavedScenario) -> None:
        payload = (
            scenario.id,
            scenario.name,
            scenario.strategy,
            json.dumps({k: (v.value if hasattr(v, "value") else v) for k, v in asdict(scenario.config).items()}),
            json.dumps([{
                "id": s.id,
                "order_id": s.job_id,
                "machine": s.machine,
                "register": s.step_index,
                "planned_date": s.start.isoformat(),
                "planned_end": s.end.isoformat(),
            } for s in scenario.segments]),
            json.dumps([{"order_id": sk.job.id, "reason": sk.reason} for sk in scenario.skipped]),
            json.dumps(asdict(scenario.metrics)),
            scenario.created_by,
            scenario.created_at,
        )

        with pyodbc.connect(self.conn_str) as conn:
            conn.autocommit = False
            cur = conn.cursor()
            try:
                cur.execute(INSERT_SCENARIO_SQL, payload)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()
