"""
Response Quality Flag Engine

Purpose:
- Flag records completed implausibly fast (speeders)
- Flag contradictory answers on attention checks, province and age
- Flag straight-lining across instruments and manual exclusions
- Reduce flags and structural conditions to a single exclusion decision

Every flag is computed from the record's own fields, except the speeding
cutoff which is a fraction of the batch median completion time. The median
is taken over the full batch before any exclusion is applied.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from ..clean_normalise.codes import (
    as_flag,
    code_series,
    column_or_missing,
    key_series,
    missing_mask,
    normalise_key,
    normalise_label,
)
from ..config_runtime import ConfigurationError, resolve_instrument_columns
from .longstring import add_longstring_flags

logger = logging.getLogger(__name__)

INCONSISTENCY_FLAGS = [
    "inconsistent_repeat",
    "inconsistent_instructed",
    "inconsistent_province",
    "inconsistent_age",
]

QUALITY_FLAGS = ["speeder"] + INCONSISTENCY_FLAGS + ["straightliner", "manual_exclude"]

STRUCTURAL_CONDITIONS = [
    "not_included",
    "region_mismatch",
    "missing_start",
    "disqualified",
    "missing_exit",
    "withdrawn",
]


@dataclass
class QualitySummary:
    total: int
    median_minutes: float
    cutoff_minutes: float
    flag_counts: Dict[str, int] = field(default_factory=dict)
    excluded: int = 0

    def as_rows(self) -> List[dict]:
        rows = [{"metric": "records", "value": self.total}]
        rows.append({"metric": "median_minutes", "value": self.median_minutes})
        rows.append({"metric": "speeding_cutoff_minutes", "value": self.cutoff_minutes})
        for name, count in self.flag_counts.items():
            rows.append({"metric": name, "value": count})
        rows.append({"metric": "excluded", "value": self.excluded})
        return rows


# ============================================================
# SPEEDING
# ============================================================

def completion_minutes(df: pd.DataFrame, start_col: str, exit_col: str) -> pd.Series:
    """
    exit - start in minutes; NaN unless both timestamps parse.
    """
    start = pd.to_datetime(column_or_missing(df, start_col), errors="coerce", utc=True, format="mixed")
    end = pd.to_datetime(column_or_missing(df, exit_col), errors="coerce", utc=True, format="mixed")
    return (end - start).dt.total_seconds() / 60.0


def speeding_cutoff(minutes: pd.Series, median_fraction: float = 0.3):
    """
    Returns (median, cutoff) over non-missing completion times.
    Both are NaN when no record has a completion time.
    """
    valid = minutes.dropna()
    if valid.empty:
        return float("nan"), float("nan")
    median = float(valid.median())
    return median, float(median_fraction) * median


def speeder_flags(minutes: pd.Series, cutoff: float) -> pd.Series:
    """1 iff completion time is present and <= cutoff."""
    if pd.isna(cutoff):
        return pd.Series(0, index=minutes.index, dtype=int)
    return (minutes.notna() & (minutes <= cutoff)).astype(int)


# ============================================================
# INCONSISTENCY
# ============================================================

def repeat_item_inconsistency(df: pd.DataFrame, primary_col: str, check_col: str) -> pd.Series:
    """
    1 iff the primary answer differs from its repeated attention-check item.
    No check shown (missing check value) means the record cannot be inconsistent.
    """
    if check_col in df.columns and primary_col not in df.columns:
        raise ConfigurationError(
            f"Attention check '{check_col}' is present but its primary item '{primary_col}' is not."
        )
    primary = code_series(column_or_missing(df, primary_col))
    check = code_series(column_or_missing(df, check_col))
    shown = check.notna()
    differs = primary.ne(check) | primary.isna()
    return (shown & differs).astype(int)


def instructed_item_inconsistency(df: pd.DataFrame, check_col: str, forbidden_codes: Iterable[str]) -> pd.Series:
    """1 iff the instructed-response check carries a forbidden code."""
    forbidden = {str(c) for c in forbidden_codes}
    check = code_series(column_or_missing(df, check_col))
    return check.isin(forbidden).astype(int)


def province_inconsistency(
    df: pd.DataFrame,
    province_col: str,
    region_col: str,
    province_regions: Dict[str, str],
) -> pd.Series:
    """
    1 iff the self-reported province name differs from the IP-derived region.
    Forced to 0 when either side is missing or the code has no mapping.
    """
    codes = code_series(column_or_missing(df, province_col))
    reported = codes.map(lambda c: province_regions.get(c) if c is not None else None)
    reported = reported.map(normalise_label)
    resolved = column_or_missing(df, region_col).map(normalise_label)
    both = reported.notna() & resolved.notna()
    return (both & reported.ne(resolved)).astype(int)


def age_inconsistency(df: pd.DataFrame, screener_col: str, age_col: str) -> pd.Series:
    """1 iff screener age differs from the later self-reported age; 0 without a screener age."""
    screener = code_series(column_or_missing(df, screener_col))
    age = code_series(column_or_missing(df, age_col))
    return (screener.notna() & (screener.ne(age) | age.isna())).astype(int)


# ============================================================
# MANUAL EXCLUSION
# ============================================================

def manual_exclusion_flags(df: pd.DataFrame, id_col: str, manual_ids: Iterable) -> pd.Series:
    """1 iff the record identifier is on the manual list (exact match after stripping)."""
    listed = {normalise_key(v) for v in (manual_ids if manual_ids is not None else [])}
    listed.discard(None)
    ids = key_series(column_or_missing(df, id_col))
    return ids.isin(listed).astype(int)


# ============================================================
# EXCLUSION DECISION
# ============================================================

def exclusion_conditions(df: pd.DataFrame, settings: dict) -> pd.DataFrame:
    """
    Boolean frame with one column per quality flag and structural condition.

    Quality flags must already be on `df` (see add_quality_flags).
    """
    cols = settings["columns"]
    out = pd.DataFrame(index=df.index)

    for flag in QUALITY_FLAGS:
        if flag not in df.columns:
            raise KeyError(f"Quality flag '{flag}' missing; run add_quality_flags first.")
        out[flag] = df[flag].fillna(0).astype(int).astype(bool)

    include_col = cols.get("include")
    out["not_included"] = ~column_or_missing(df, include_col).map(lambda v: as_flag(v, default=True)).astype(bool)

    target = str(settings["study"]["region_code"])
    strata = code_series(column_or_missing(df, cols.get("strata_region")))
    out["region_mismatch"] = strata.ne(target) | strata.isna()

    out["missing_start"] = missing_mask(column_or_missing(df, cols.get("started_at")))
    out["disqualified"] = ~missing_mask(column_or_missing(df, cols.get("disqualified_at")))
    out["missing_exit"] = missing_mask(column_or_missing(df, cols.get("exited_at")))
    out["withdrawn"] = column_or_missing(df, cols.get("withdrawn")).map(lambda v: as_flag(v, default=False)).astype(bool)
    return out


def exclusion_decision(conditions: pd.DataFrame) -> pd.Series:
    """Pure OR over every condition column."""
    return conditions.any(axis=1).astype(bool)


# ============================================================
# DATAFRAME HELPERS (PIPELINE INTEGRATION)
# ============================================================

def add_quality_flags(
    df: pd.DataFrame,
    settings: dict,
    manual_ids: Iterable = (),
    instruments: Optional[Dict[str, List[str]]] = None,
):
    """
    Add every quality flag and the exclusion decision to a DataFrame.

    Creates:
    - completion_minutes, speeder
    - inconsistent_repeat / _instructed / _province / _age
    - longstring_<instrument>, longstring_total, straightliner
    - manual_exclude
    - excluded

    Returns (DataFrame, QualitySummary).
    """
    cols = settings["columns"]
    df_out = df.copy()

    minutes = completion_minutes(df_out, cols["started_at"], cols["exited_at"])
    fraction = float(settings.get("speeding", {}).get("median_fraction", 0.3))
    median, cutoff = speeding_cutoff(minutes, fraction)
    df_out["completion_minutes"] = minutes
    df_out["speeder"] = speeder_flags(minutes, cutoff)

    checks = settings.get("attention_checks", {}) or {}
    repeat_cfg = checks.get("repeat_item") or {}
    instructed_cfg = checks.get("instructed_item") or {}

    df_out["inconsistent_repeat"] = repeat_item_inconsistency(
        df_out, repeat_cfg.get("primary"), repeat_cfg.get("check")
    )
    df_out["inconsistent_instructed"] = instructed_item_inconsistency(
        df_out, instructed_cfg.get("check"), instructed_cfg.get("forbidden_codes") or []
    )
    df_out["inconsistent_province"] = province_inconsistency(
        df_out, cols["province"], cols.get("ip_region", "ip_region"), settings.get("province_regions") or {}
    )
    df_out["inconsistent_age"] = age_inconsistency(df_out, cols["screener_age"], cols["age"])

    sl_cfg = settings.get("straightlining", {}) or {}
    if instruments is None:
        instruments = resolve_instrument_columns(df_out.columns, sl_cfg.get("instruments") or {})
    df_out = add_longstring_flags(
        df_out,
        instruments,
        ignore=sl_cfg.get("ignore_value"),
        ignore_na=bool(sl_cfg.get("ignore_na", True)),
        threshold=int(sl_cfg.get("threshold", 2)),
    )

    df_out["manual_exclude"] = manual_exclusion_flags(df_out, cols["id"], manual_ids)

    conditions = exclusion_conditions(df_out, settings)
    df_out["excluded"] = exclusion_decision(conditions)

    counts = {flag: int(df_out[flag].sum()) for flag in QUALITY_FLAGS}
    counts.update({name: int(conditions[name].sum()) for name in STRUCTURAL_CONDITIONS})
    summary = QualitySummary(
        total=len(df_out),
        median_minutes=median,
        cutoff_minutes=cutoff,
        flag_counts=counts,
        excluded=int(df_out["excluded"].sum()),
    )
    if np.isnan(cutoff):
        logger.warning("No record has both start and exit timestamps; speeding flag disabled for this batch.")
    else:
        logger.info("Speeding cutoff %.2f min (median %.2f min)", cutoff, median)
    return df_out, summary
