"""
Straight-lining (long-string) detection.

A respondent straight-lines an instrument when every included item carries
the same answer. Detection is row-wise over an explicit, ordered column list
resolved once from settings (see config_runtime.resolve_instrument_columns).
"""

from typing import Dict, List, Optional

import pandas as pd

from ..clean_normalise.codes import normalise_code


def is_straightline(values, ignore: Optional[str] = None, ignore_na: bool = True) -> bool:
    """
    Returns True if a single record's answers form a straight line.

    Args:
        values: answers for the included columns, in column order
        ignore: sentinel code (e.g. "99" for "don't know"); any answer equal
                to it means the record is not flagged
        ignore_na: accepted for compatibility; has no effect. A record with
                   any missing answer is never flagged, whatever the toggle.

    Returns:
        True iff no answer is missing, none equals `ignore`, and all equal
        the first answer.
    """
    codes = [normalise_code(v) for v in values]
    if not codes:
        return False
    if any(c is None for c in codes):
        return False
    ignore_code = normalise_code(ignore)
    if ignore_code is not None and any(c == ignore_code for c in codes):
        return False
    first = codes[0]
    return all(c == first for c in codes)


def longstring_flags(
    df: pd.DataFrame,
    columns: List[str],
    ignore: Optional[str] = None,
    ignore_na: bool = True,
) -> pd.Series:
    """
    Per-record straight-line flag (0/1) over `columns`.
    """
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"Straight-lining columns not in data: {', '.join(missing)}")

    if df.empty:
        return pd.Series([], index=df.index, dtype=int)

    subset = df[columns]
    flags = [
        int(is_straightline(row, ignore=ignore, ignore_na=ignore_na))
        for row in subset.itertuples(index=False, name=None)
    ]
    return pd.Series(flags, index=df.index, dtype=int)


def add_longstring_flags(
    df: pd.DataFrame,
    instruments: Dict[str, List[str]],
    ignore: Optional[str] = None,
    ignore_na: bool = True,
    threshold: int = 2,
    prefix: str = "longstring_",
) -> pd.DataFrame:
    """
    Add one flag per instrument, their sum and the final straightliner flag.

    Creates:
    - <prefix><instrument>   (0/1 per instrument)
    - <prefix>total          (sum over instruments)
    - straightliner          (1 iff total > threshold)
    """
    df_out = df.copy()
    flag_cols = []
    for name, columns in instruments.items():
        col = f"{prefix}{name}"
        df_out[col] = longstring_flags(df_out, columns, ignore=ignore, ignore_na=ignore_na)
        flag_cols.append(col)

    if flag_cols:
        df_out[f"{prefix}total"] = df_out[flag_cols].sum(axis=1).astype(int)
    else:
        df_out[f"{prefix}total"] = 0
    df_out["straightliner"] = (df_out[f"{prefix}total"] > int(threshold)).astype(int)
    return df_out
