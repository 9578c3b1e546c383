"""
Persisted decisions shared across runs: the address list, the
identifier -> region cache and the manual exclusion list.

The store is a plain value passed into and returned from the pipeline.
Reading lives here; writing is in reporting.export.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List

import pandas as pd

from ..clean_normalise.codes import normalise_key
from .survey_source import SchemaError

logger = logging.getLogger(__name__)

SHEET_ADDRESSES = "ip_addresses"
SHEET_REGIONS = "ip_regions"
SHEET_MANUAL = "manual_decisions"
SHEET_REASONS = "exclusion_reasons"
SHEET_REASON_COUNTS = "reason_counts"

REGION_COLUMN = "region"
DECISION_COLUMN = "decision"


@dataclass
class DecisionStore:
    id_col: str
    ip_col: str
    addresses: pd.DataFrame
    regions: Dict[str, str] = field(default_factory=dict)
    manual: pd.DataFrame = None

    def manual_ids(self) -> List[str]:
        """
        Identifiers on the manual-decision sheet. Every listed identifier is a
        forced exclusion; the decision column is carried for reviewers and
        written back unchanged, but its value is not interpreted.
        """
        if self.manual is None or self.manual.empty:
            return []
        ids = [normalise_key(v) for v in self.manual[self.id_col]]
        return [i for i in ids if i is not None]

    def with_regions(self, regions: Dict[str, str]) -> "DecisionStore":
        return replace(self, regions=dict(regions))

    def regions_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {self.id_col: list(self.regions.keys()), REGION_COLUMN: list(self.regions.values())},
            columns=[self.id_col, REGION_COLUMN],
        )


def empty_store(id_col: str, ip_col: str) -> DecisionStore:
    return DecisionStore(
        id_col=id_col,
        ip_col=ip_col,
        addresses=pd.DataFrame(columns=[id_col, ip_col]),
        regions={},
        manual=pd.DataFrame(columns=[id_col, DECISION_COLUMN]),
    )


def _sheet(sheets: Dict[str, pd.DataFrame], name: str, required: List[str]) -> pd.DataFrame:
    df = sheets.get(name)
    if df is None:
        logger.info("Workbook has no '%s' sheet; starting it empty", name)
        return pd.DataFrame(columns=required)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(f"Workbook sheet '{name}' is missing columns: {', '.join(missing)}")
    return df


def load_decision_store(path, id_col: str, ip_col: str) -> DecisionStore:
    """
    Read the decisions workbook. A missing workbook gives an empty store
    (first run); a sheet without its required columns is fatal.
    """
    p = Path(path) if path is not None else None
    if p is None or not p.exists():
        logger.warning("Decision workbook not found at %s; starting with an empty store", p)
        return empty_store(id_col, ip_col)

    sheets = pd.read_excel(p, sheet_name=None, dtype=str, engine="openpyxl")
    addresses = _sheet(sheets, SHEET_ADDRESSES, [id_col, ip_col])
    regions_df = _sheet(sheets, SHEET_REGIONS, [id_col, REGION_COLUMN])
    manual = _sheet(sheets, SHEET_MANUAL, [id_col])
    if DECISION_COLUMN not in manual.columns:
        manual = manual.assign(**{DECISION_COLUMN: "exclude"})

    regions: Dict[str, str] = {}
    for rid, region in zip(regions_df[id_col], regions_df[REGION_COLUMN]):
        key = normalise_key(rid)
        if key is None or key in regions or not isinstance(region, str) or not region.strip():
            continue
        regions[key] = region.strip()

    return DecisionStore(
        id_col=id_col,
        ip_col=ip_col,
        addresses=addresses[[id_col, ip_col]].copy(),
        regions=regions,
        manual=manual.copy(),
    )
