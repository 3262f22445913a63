from __future__ import annotations

from typing import Optional
import re

import pandas as pd

from scheduling_core import normalize_code

# NOTE: This module is intended to be a pure "input normalization / cleaning" layer.
# Keep scheduling logic out of here to make it easier to test and reuse.

TRUE_FLAGS = {"Y", "YES", "SI", "S", "TRUE", "1", "X", "OK"}

ROUTING_COLUMNS = [
    "WO", "STEPS", "STATUS", "DELIVERY_DATE", "PROJECT_DELIVERY_DATE", "PROJECT",
    "MATERIAL", "TREATMENT", "HAS_MODEL", "HAS_BLUEPRINT", "CREATED_AT", "DESCRIPTION",
]


def normalize_treatment(v) -> str:
    if pd.isna(v):
        return ""
    s = re.sub(r"\s+", " ", str(v).strip())
    return "" if s.upper() in ("", "N/A", "NA", "NONE", "-") else s


def normalize_flag(v) -> bool:
    if pd.isna(v):
        return False
    if isinstance(v, bool):
        return v
    return str(v).strip().upper() in TRUE_FLAGS


def find_col(df: pd.DataFrame, candidates: list[str]) -> str:
    """Find a column name in df.columns given candidate names.

    Tries exact (case-insensitive) match first, then substring match.
    """
    cand_lower = [c.lower() for c in candidates]
    for c in df.columns:
        if c.lower() in cand_lower:
            return c
    for c in df.columns:
        cl = c.lower()
        for cand in cand_lower:
            if cand in cl:
                return c
    raise KeyError(f"Could not find any of: {candidates}")


def find_col_optional(df: pd.DataFrame, candidates: list[str]) -> Optional[str]:
    try:
        return find_col(df, candidates)
    except KeyError:
        return None


def _first_non_empty(series: pd.Series, default: str = "") -> str:
    for x in series.tolist():
        if pd.notna(x) and str(x).strip():
            return str(x).strip()
    return default


def clean_routing(raw: pd.DataFrame) -> pd.DataFrame:
    """Normalize a one-row-per-step routing sheet into one row per WO.

    STEPS holds the ordered (machine, hours) pairs; steps without a machine
    or with non-positive hours are dropped, so a WO may end with no steps.
    """
    raw = raw.copy()
    raw.columns = [str(c).strip() for c in raw.columns]

    wo_col = find_col(raw, ["Order Number", "WO"])
    machine_col = find_col_optional(raw, ["Machine"])
    hours_col = find_col_optional(raw, ["Hours"])
    step_col = find_col_optional(raw, ["Step", "Seq"])
    status_col = find_col_optional(raw, ["Status"])
    delivery_col = find_col_optional(raw, ["Delivery Date"])
    proj_delivery_col = find_col_optional(raw, ["Project Delivery Date"])
    project_col = find_col_optional(raw, ["Project"])
    material_col = find_col_optional(raw, ["Material"])
    treatment_col = find_col_optional(raw, ["Treatment"])
    model_col = find_col_optional(raw, ["3D Model", "Model"])
    blueprint_col = find_col_optional(raw, ["Blueprint"])
    created_col = find_col_optional(raw, ["Created"])
    desc_col = find_col_optional(raw, ["Description"])

    def dates(col: Optional[str]):
        return pd.to_datetime(raw[col], errors="coerce") if col else pd.NaT

    data = pd.DataFrame({
        "WO": (raw[wo_col].where(pd.notna(raw[wo_col]), "").astype(str).str.strip().str.replace(r"\.0$", "", regex=True)),
        "STEP": pd.to_numeric(raw[step_col], errors="coerce") if step_col else 0,
        "ROW": range(len(raw)),
        "MACHINE": raw[machine_col].map(normalize_code) if machine_col else "",
        "HOURS": pd.to_numeric(raw[hours_col], errors="coerce").fillna(0.0).astype(float) if hours_col else 0.0,
        "STATUS": raw[status_col].map(normalize_code) if status_col else "",
        "DELIVERY_DATE": dates(delivery_col),
        "PROJECT_DELIVERY_DATE": dates(proj_delivery_col),
        "PROJECT": raw[project_col].fillna("").astype(str).str.strip() if project_col else "",
        "MATERIAL": raw[material_col].fillna("").astype(str).str.strip().str.upper() if material_col else "",
        "TREATMENT": raw[treatment_col].map(normalize_treatment) if treatment_col else "",
        "HAS_MODEL": raw[model_col].map(normalize_flag) if model_col else False,
        "HAS_BLUEPRINT": raw[blueprint_col].map(normalize_flag) if blueprint_col else False,
        "CREATED_AT": dates(created_col),
        "DESCRIPTION": raw[desc_col].fillna("").astype(str).str.strip() if desc_col else "",
    }, index=raw.index)

    data = data[data["WO"] != ""].copy()
    if data.empty:
        return pd.DataFrame(columns=ROUTING_COLUMNS)

    rows = []
    for wo, grp in data.groupby("WO", sort=True):
        grp = grp.sort_values(["STEP", "ROW"], kind="stable", na_position="last")
        steps = tuple(
            (m, float(h))
            for m, h in zip(grp["MACHINE"], grp["HOURS"])
            if m and h > 0
        )
        rows.append({
            "WO": wo,
            "STEPS": steps,
            "STATUS": _first_non_empty(grp["STATUS"], ""),
            "DELIVERY_DATE": grp["DELIVERY_DATE"].min(),
            "PROJECT_DELIVERY_DATE": grp["PROJECT_DELIVERY_DATE"].min(),
            "PROJECT": _first_non_empty(grp["PROJECT"], ""),
            "MATERIAL": _first_non_empty(grp["MATERIAL"], ""),
            "TREATMENT": _first_non_empty(grp["TREATMENT"], ""),
            "HAS_MODEL": bool(grp["HAS_MODEL"].any()),
            "HAS_BLUEPRINT": bool(grp["HAS_BLUEPRINT"].any()),
            "CREATED_AT": grp["CREATED_AT"].min(),
            "DESCRIPTION": _first_non_empty(grp["DESCRIPTION"], ""),
        })

    return pd.DataFrame(rows, columns=ROUTING_COLUMNS)


def load_and_clean(xlsx_path) -> pd.DataFrame:
    """Load the routing workbook and normalize it into the per-WO table used by the planner."""
    raw = pd.read_excel(xlsx_path)
    return clean_routing(raw)
