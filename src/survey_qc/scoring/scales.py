"""
Scale and subscale totals.
"""

from typing import Dict, List, Optional

import pandas as pd

from ..config_runtime import resolve_scale_items


def strict_sum(df: pd.DataFrame, columns: List[str]) -> pd.Series:
    """
    Row-wise sum with no missing tolerance: any missing (or non-numeric)
    item gives a missing total.
    """
    if not columns:
        return pd.Series(float("nan"), index=df.index, dtype=float)
    items = df[columns].apply(pd.to_numeric, errors="coerce")
    return items.sum(axis=1, min_count=len(columns)).where(items.notna().all(axis=1))


def add_scale_scores(
    df: pd.DataFrame,
    scales_cfg: dict,
    resolved: Optional[Dict[str, dict]] = None,
    prefix: str = "score_",
) -> pd.DataFrame:
    """
    Add score_<scale> for every scale and score_<scale>_<subscale> for each
    configured subscale.
    """
    if resolved is None:
        resolved = resolve_scale_items(df.columns, scales_cfg)

    df_out = df.copy()
    for name, spec in resolved.items():
        df_out[f"{prefix}{name}"] = strict_sum(df_out, spec["items"])
        for sub, columns in (spec.get("subscales") or {}).items():
            df_out[f"{prefix}{name}_{sub}"] = strict_sum(df_out, columns)
    return df_out


def score_columns(resolved: Dict[str, dict], prefix: str = "score_") -> List[str]:
    cols = []
    for name, spec in resolved.items():
        cols.append(f"{prefix}{name}")
        cols += [f"{prefix}{name}_{sub}" for sub in (spec.get("subscales") or {})]
    return cols
