import os
import logging
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from ..ingest.decision_store import (
    DecisionStore,
    SHEET_ADDRESSES,
    SHEET_MANUAL,
    SHEET_REASON_COUNTS,
    SHEET_REASONS,
    SHEET_REGIONS,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------
# Atomic writes
# ---------------------------------------------------

def _atomic_write(path: Path, write_fn, suffix: str):
    """
    Write to a temp file beside `path`, then replace. A failed write leaves
    the previous file untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}_", suffix=suffix, dir=str(path.parent))
    os.close(fd)
    try:
        write_fn(Path(tmp_name))
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
    return path


def write_csv_atomic(df: pd.DataFrame, path, index: bool = False) -> Path:
    return _atomic_write(Path(path), lambda tmp: df.to_csv(tmp, index=index), suffix=".csv")


# ---------------------------------------------------
# Run snapshot
# ---------------------------------------------------

def new_run_dir(output_root, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H%M%S")
    run_dir = Path(output_root) / stamp
    suffix = 1
    while run_dir.exists():
        run_dir = Path(output_root) / f"{stamp}_{suffix}"
        suffix += 1
    run_dir.mkdir(parents=True)
    return run_dir


def final_view(processed: pd.DataFrame) -> pd.DataFrame:
    """Processed table with excluded records removed."""
    return processed[~processed["excluded"].astype(bool)].copy()


def write_snapshot(
    raw: pd.DataFrame,
    processed: pd.DataFrame,
    output_root,
    output_cfg: dict,
    quota: Optional[pd.DataFrame] = None,
    reason_counts: Optional[pd.DataFrame] = None,
    now: Optional[datetime] = None,
) -> Path:
    """
    Create a timestamped run directory holding the raw input, the full
    processed table (excluded rows kept) and the final table (excluded rows
    removed), plus the quota and reason-count tables when given.
    """
    run_dir = new_run_dir(output_root, now=now)
    raw.to_csv(run_dir / output_cfg.get("raw_filename", "raw.csv"), index=False)
    processed.to_csv(run_dir / output_cfg.get("processed_filename", "processed.csv"), index=False)
    final_view(processed).to_csv(run_dir / output_cfg.get("final_filename", "final.csv"), index=False)
    if quota is not None:
        quota.to_csv(run_dir / output_cfg.get("quota_filename", "quota.csv"))
    if reason_counts is not None:
        reason_counts.to_csv(run_dir / output_cfg.get("reason_counts_filename", "reason_counts.csv"), index=False)
    logger.info("Wrote run snapshot to %s", run_dir)
    return run_dir


# ---------------------------------------------------
# Persisted stores
# ---------------------------------------------------

def write_decision_workbook(
    path,
    store: DecisionStore,
    reasons: Optional[pd.DataFrame] = None,
    counts: Optional[pd.DataFrame] = None,
) -> Path:
    """
    Write the three store sheets plus the two summary sheets.
    """
    def _write(tmp: Path):
        with pd.ExcelWriter(tmp, engine="openpyxl") as writer:
            store.addresses.to_excel(writer, sheet_name=SHEET_ADDRESSES, index=False)
            store.regions_frame().to_excel(writer, sheet_name=SHEET_REGIONS, index=False)
            store.manual.to_excel(writer, sheet_name=SHEET_MANUAL, index=False)
            if reasons is not None:
                reasons.to_excel(writer, sheet_name=SHEET_REASONS, index=False)
            if counts is not None:
                counts.to_excel(writer, sheet_name=SHEET_REASON_COUNTS, index=False)

    out = _atomic_write(Path(path), _write, suffix=".xlsx")
    logger.info("Updated decision workbook %s (%d cached regions)", out, len(store.regions))
    return out


def read_metrics_cache(path) -> Optional[pd.DataFrame]:
    p = Path(path) if path is not None else None
    if p is None or not p.exists():
        return None
    return pd.read_csv(p, dtype={"tracking_code": str})


def write_metrics_cache(path, cache: pd.DataFrame) -> Path:
    out = write_csv_atomic(cache, path)
    logger.info("Updated analytics cache %s (%d codes)", out, len(cache))
    return out
