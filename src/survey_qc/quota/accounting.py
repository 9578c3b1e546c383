"""
Quota accounting: which records count toward quota cells, the province x
gender cross-tabulation, and a single exclusion reason per record.
"""

import logging
from typing import Dict, List

import pandas as pd

from ..clean_normalise.codes import code_series, column_or_missing, key_series
from ..quality.flags import QUALITY_FLAGS, exclusion_conditions

logger = logging.getLogger(__name__)

NOT_EXCLUDED = "Not excluded"
FAILED_QUALITY = "Failed quality checks"
MISSING_TRACKING = "Missing tracking number"
DID_NOT_FINISH = "Did not finish"
WITHDRAWAL = "Withdrawal request"
SCREENOUT = "Screenout"
NOT_IN_REGION = "Not in target region"

# Display order for reason counts.
REASON_ORDER = [
    NOT_EXCLUDED,
    FAILED_QUALITY,
    MISSING_TRACKING,
    DID_NOT_FINISH,
    WITHDRAWAL,
    SCREENOUT,
    NOT_IN_REGION,
]


def invalid_gender_mask(df: pd.DataFrame, settings: dict) -> pd.Series:
    """Gender missing or in the non-binary/other/unspecified code set."""
    invalid = {str(c) for c in settings["quota"].get("invalid_gender_codes") or []}
    gender = code_series(column_or_missing(df, settings["columns"].get("gender")))
    return gender.isna() | gender.isin(invalid)


def missing_tracking_mask(df: pd.DataFrame, settings: dict) -> pd.Series:
    return key_series(column_or_missing(df, settings["columns"].get("tracking_code"))).isna()


def add_quota_exclusion(df: pd.DataFrame, settings: dict) -> pd.DataFrame:
    """
    quota_excluded = excluded OR missing tracking code OR invalid gender.
    Never changes `excluded`.
    """
    if "excluded" not in df.columns:
        raise KeyError("Column 'excluded' missing; run add_quality_flags first.")
    df_out = df.copy()
    df_out["quota_excluded"] = (
        df_out["excluded"].astype(bool)
        | missing_tracking_mask(df_out, settings)
        | invalid_gender_mask(df_out, settings)
    ).astype(bool)
    return df_out


def quota_crosstab(df: pd.DataFrame, settings: dict) -> pd.DataFrame:
    """
    Counts of quota-eligible records by province label x gender label.

    Every label in both lookup tables appears, unobserved cells are 0.
    """
    quota_cfg = settings["quota"]
    cols = settings["columns"]
    province_labels: Dict[str, str] = quota_cfg.get("province_labels") or {}
    gender_labels: Dict[str, str] = quota_cfg.get("gender_labels") or {}

    eligible = df[~df["quota_excluded"].astype(bool)]
    province = code_series(column_or_missing(eligible, cols.get("province"))).map(province_labels)
    gender = code_series(column_or_missing(eligible, cols.get("gender"))).map(gender_labels)

    unlabelled = int((province.isna() | gender.isna()).sum())
    if unlabelled:
        logger.warning("%d quota-eligible records have a province or gender code without a label.", unlabelled)

    labelled = pd.DataFrame({"province": province, "gender": gender}).dropna()
    table = pd.crosstab(labelled["province"], labelled["gender"]) if not labelled.empty else pd.DataFrame()
    table = table.reindex(
        index=list(dict.fromkeys(province_labels.values())),
        columns=list(dict.fromkeys(gender_labels.values())),
        fill_value=0,
    ).fillna(0).astype(int)
    table.index.name = "Province"
    table.columns.name = None

    if quota_cfg.get("include_totals", True):
        table["Total"] = table.sum(axis=1)
        table.loc["Total"] = table.sum(axis=0)
    return table


def exclusion_reasons(df: pd.DataFrame, settings: dict) -> pd.DataFrame:
    """
    One exclusion reason per record. Conditions are applied in a fixed order
    and a later matching condition overwrites an earlier one.
    """
    conditions = exclusion_conditions(df, settings)
    failed_quality = conditions[QUALITY_FLAGS].any(axis=1) | conditions["not_included"]

    ordered = [
        (FAILED_QUALITY, failed_quality),
        (MISSING_TRACKING, missing_tracking_mask(df, settings)),
        (FAILED_QUALITY, invalid_gender_mask(df, settings)),
        (DID_NOT_FINISH, conditions["missing_start"] | conditions["missing_exit"]),
        (WITHDRAWAL, conditions["withdrawn"]),
        (SCREENOUT, conditions["disqualified"]),
        (NOT_IN_REGION, conditions["region_mismatch"]),
    ]

    reason = pd.Series(NOT_EXCLUDED, index=df.index, dtype=object)
    for label, mask in ordered:
        reason = reason.mask(mask.astype(bool), label)

    id_col = settings["columns"]["id"]
    return pd.DataFrame({id_col: column_or_missing(df, id_col).values, "exclusion_reason": reason.values})


def reason_counts(reasons: pd.DataFrame) -> pd.DataFrame:
    """Count per reason in REASON_ORDER; reasons with no records are kept as 0."""
    counts = reasons["exclusion_reason"].value_counts()
    extra: List[str] = [r for r in counts.index if r not in REASON_ORDER]
    order = REASON_ORDER + extra
    out = counts.reindex(order, fill_value=0).astype(int).reset_index()
    out.columns = ["exclusion_reason", "count"]
    return out
