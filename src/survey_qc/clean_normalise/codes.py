# src/survey_qc/clean_normalise/codes.py
import re
from typing import Optional

import numpy as np
import pandas as pd

WS = re.compile(r"\s+")

MISSING_STRINGS = {"", "nan", "none", "null", "na", "n/a", "<na>", "nat"}
TRUE_STRINGS = {"1", "true", "t", "yes", "y"}
FALSE_STRINGS = {"0", "false", "f", "no", "n"}


def is_missing(value) -> bool:
    """
    True for None/NaN/NaT and for blank or null-like strings.
    """
    if value is None:
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        pass
    if isinstance(value, str):
        return value.strip().lower() in MISSING_STRINGS
    return False


def normalise_code(value) -> Optional[str]:
    """
    Normalise a survey answer to a comparable code string.

    "2", 2, 2.0 and " 2 " all become "2". Missing values become None.
    Non-numeric text is stripped and whitespace-collapsed but keeps its case.
    Identifiers and tracking codes go through normalise_key instead.
    """
    if is_missing(value):
        return None

    if isinstance(value, (bool, np.bool_)):
        return "1" if value else "0"

    if isinstance(value, (int, np.integer)):
        return str(int(value))

    if isinstance(value, (float, np.floating)):
        f = float(value)
        return str(int(f)) if f.is_integer() else repr(f)

    text = WS.sub(" ", str(value).strip())
    try:
        f = float(text)
    except ValueError:
        return text
    if not np.isfinite(f):
        return text
    return str(int(f)) if f.is_integer() else repr(f)


def normalise_key(value) -> Optional[str]:
    """
    Record identifier or tracking code as an exact join key.

    Only surrounding whitespace is stripped: "007" and "7" stay distinct and
    long numeric identifiers keep every digit. Missing values become None.
    """
    if is_missing(value):
        return None
    return str(value).strip()


def normalise_label(value) -> Optional[str]:
    """Case- and whitespace-insensitive key for comparing place names."""
    code = normalise_code(value)
    if code is None:
        return None
    return code.lower()


def as_flag(value, default: bool = False) -> bool:
    """
    Interpret a 1/0, true/false or yes/no cell as a boolean.
    Missing or unrecognised values fall back to `default`.
    """
    code = normalise_code(value)
    if code is None:
        return default
    lowered = code.lower()
    if lowered in TRUE_STRINGS:
        return True
    if lowered in FALSE_STRINGS:
        return False
    return default


def code_series(s: pd.Series) -> pd.Series:
    """Apply normalise_code over a Series, keeping None for missing cells."""
    return s.map(normalise_code).astype(object)


def key_series(s: pd.Series) -> pd.Series:
    return s.map(normalise_key).astype(object)


def missing_mask(s: pd.Series) -> pd.Series:
    return s.map(is_missing).astype(bool)


def column_or_missing(df: pd.DataFrame, name: Optional[str]) -> pd.Series:
    """Column by name, or an all-missing Series when the column is absent."""
    if name and name in df.columns:
        return df[name]
    return pd.Series([None] * len(df), index=df.index, dtype=object)
