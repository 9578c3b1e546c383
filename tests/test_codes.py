import numpy as np
import pandas as pd
import pytest

from survey_qc.clean_normalise.codes import as_flag, column_or_missing, is_missing, key_series, normalise_code, normalise_key


@pytest.mark.parametrize("value", ["2", 2, 2.0, " 2 ", "2.0", np.int64(2)])
def test_equivalent_codes_normalise_to_the_same_string(value):
    assert normalise_code(value) == "2"


@pytest.mark.parametrize("value", [None, float("nan"), pd.NaT, "", "  ", "NA", "null"])
def test_missing_values(value):
    assert is_missing(value)
    assert normalise_code(value) is None


def test_text_keeps_case_and_collapses_whitespace():
    assert normalise_code("  Nova   Scotia ") == "Nova Scotia"
    assert normalise_code("2.5") == "2.5"


@pytest.mark.parametrize(
    "value, expected",
    [("007", "007"), (" R12 ", "R12"), ("12345678901234567891", "12345678901234567891"), ("1e3", "1e3"), ("2.0", "2.0")],
)
def test_keys_are_only_stripped(value, expected):
    assert normalise_key(value) == expected


def test_missing_keys():
    out = key_series(pd.Series(["", None, "nan", "0042"], dtype=object))
    assert out.tolist() == [None, None, None, "0042"]


@pytest.mark.parametrize("value, expected", [("1", True), ("yes", True), ("0", False), ("False", False)])
def test_flags(value, expected):
    assert as_flag(value) is expected


def test_unrecognised_flag_uses_default():
    assert as_flag("maybe", default=True) is True
    assert as_flag(None) is False


def test_absent_column_is_all_missing():
    df = pd.DataFrame({"a": [1, 2]})
    out = column_or_missing(df, "b")
    assert out.isna().all()
    assert list(out.index) == [0, 1]
