import pandas as pd
import pytest

from conftest import make_frame, make_record
from survey_qc.config_runtime import resolve_instrument_columns
from survey_qc.quality.longstring import add_longstring_flags, is_straightline, longstring_flags


def test_identical_answers_are_a_straight_line():
    assert is_straightline(["2", "2", 2, 2.0])


def test_differing_answers_are_not_flagged():
    assert not is_straightline(["2", "2", "3"])


@pytest.mark.parametrize("ignore_na", [True, False])
def test_any_missing_answer_prevents_flag_whatever_the_toggle(ignore_na):
    assert not is_straightline(["2", None, "2"], ignore_na=ignore_na)
    assert not is_straightline(["2", float("nan"), "2"], ignore_na=ignore_na)


def test_sentinel_answer_prevents_flag():
    assert not is_straightline(["99", "99", "99"], ignore="99")
    assert not is_straightline(["2", "99", "2"], ignore="99")
    assert is_straightline(["99", "99"], ignore=None)


def test_empty_range_is_not_flagged():
    assert not is_straightline([])


def test_all_fifteen_wellbeing_items_equal_flags_that_instrument(settings):
    flat = make_record(1, **{f"wellbeing_{n}": "2" for n in range(1, 16)})
    df = make_frame([flat, make_record(2)])
    instruments = resolve_instrument_columns(df.columns, settings["straightlining"]["instruments"])

    out = add_longstring_flags(df, instruments, ignore="99", threshold=2)

    assert out["longstring_wellbeing"].tolist() == [1, 0]
    assert out["longstring_distress"].tolist() == [0, 0]
    assert out["longstring_total"].tolist() == [1, 0]
    assert out["straightliner"].tolist() == [0, 0]


def test_attention_item_is_excluded_from_the_range(settings):
    flat = make_record(1, **{f"wellbeing_{n}": "2" for n in range(1, 16)}, wellbeing_attn="3")
    df = make_frame([flat])
    instruments = resolve_instrument_columns(df.columns, settings["straightlining"]["instruments"])

    assert "wellbeing_attn" not in instruments["wellbeing"]
    assert len(instruments["wellbeing"]) == 15
    assert add_longstring_flags(df, instruments)["longstring_wellbeing"].iloc[0] == 1


def test_straightliner_requires_total_above_threshold(settings):
    overrides = {f"wellbeing_{n}": "1" for n in range(1, 16)}
    overrides.update({f"distress_{n}": "1" for n in range(1, 11)})
    overrides.update({f"support_{n}": "1" for n in range(1, 13)})
    df = make_frame([make_record(1, **overrides)])
    instruments = resolve_instrument_columns(df.columns, settings["straightlining"]["instruments"])

    assert add_longstring_flags(df, instruments, threshold=2)["straightliner"].iloc[0] == 1
    assert add_longstring_flags(df, instruments, threshold=3)["straightliner"].iloc[0] == 0


@pytest.mark.parametrize("ignore_na", [True, False])
def test_toggle_gives_identical_flags(settings, ignore_na):
    rows = [
        make_record(1, **{f"support_{n}": "4" for n in range(1, 13)}),
        make_record(2, **{**{f"support_{n}": "4" for n in range(1, 13)}, "support_7": None}),
        make_record(3),
    ]
    df = make_frame(rows)
    columns = [f"support_{n}" for n in range(1, 13)]
    assert longstring_flags(df, columns, ignore="99", ignore_na=ignore_na).tolist() == [1, 0, 0]


def test_unknown_column_raises():
    df = pd.DataFrame({"a": ["1"]})
    with pytest.raises(KeyError):
        longstring_flags(df, ["a", "b"])
