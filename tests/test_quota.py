import pandas as pd
import pytest

from conftest import make_frame, make_record
from survey_qc.quality.flags import add_quality_flags
from survey_qc.quota.accounting import (
    DID_NOT_FINISH,
    FAILED_QUALITY,
    MISSING_TRACKING,
    NOT_EXCLUDED,
    NOT_IN_REGION,
    REASON_ORDER,
    SCREENOUT,
    WITHDRAWAL,
    add_quota_exclusion,
    exclusion_reasons,
    quota_crosstab,
    reason_counts,
)


def _processed(rows, settings, manual_ids=()):
    df, _ = add_quality_flags(make_frame(rows), settings, manual_ids=manual_ids)
    return add_quota_exclusion(df, settings)


def _reason_of(reasons, rid):
    return reasons.set_index("response_id").loc[rid, "exclusion_reason"]


def test_quota_exclusion_is_a_superset_of_exclusion(settings):
    rows = [
        make_record(1),
        make_record(2, tracking_code=None),
        make_record(3, gender="3"),
        make_record(4, gender=None),
        make_record(5, withdrawn="1"),
    ]
    df = _processed(rows, settings)

    assert df["excluded"].tolist() == [False, False, False, False, True]
    assert df["quota_excluded"].tolist() == [False, True, True, True, True]
    assert (df["quota_excluded"] >= df["excluded"]).all()


def test_quota_exclusion_requires_quality_flags(settings):
    df = make_frame([make_record(1)])
    with pytest.raises(KeyError):
        add_quota_exclusion(df, settings)


def test_crosstab_is_zero_filled_over_every_label(settings):
    rows = [
        make_record(1, province="1", gender="1"),
        make_record(2, province="1", gender="2"),
        make_record(3, province="1", gender="2"),
        make_record(4, province="7", gender="2", tracking_code=None),
    ]
    table = quota_crosstab(_processed(rows, settings), settings)

    provinces = list(settings["quota"]["province_labels"].values())
    assert list(table.index) == provinces + ["Total"]
    assert list(table.columns) == ["Man", "Woman", "Total"]
    assert table.loc["Alberta", "Man"] == 1
    assert table.loc["Alberta", "Woman"] == 2
    assert table.loc["Ontario", "Woman"] == 0
    assert table.loc["Total", "Total"] == 3
    assert table.index.name == "Province"


def test_crosstab_without_totals(settings):
    settings["quota"]["include_totals"] = False
    table = quota_crosstab(_processed([make_record(1)], settings), settings)
    assert "Total" not in table.index
    assert "Total" not in table.columns
    assert int(table.values.sum()) == 1


def test_crosstab_drops_codes_without_a_label(settings):
    rows = [make_record(1), make_record(2, province="99")]
    table = quota_crosstab(_processed(rows, settings), settings)
    assert table.loc["Total", "Total"] == 1


def test_crosstab_of_an_empty_batch_is_all_zero(settings):
    rows = [make_record(1, withdrawn="1")]
    table = quota_crosstab(_processed(rows, settings), settings)
    assert int(table.values.sum()) == 0
    assert table.shape == (len(settings["quota"]["province_labels"]) + 1, 3)


def test_withdrawal_overrides_failed_quality(settings):
    rows = [make_record(1, withdrawn="1", wellbeing_attn="5")]
    reasons = exclusion_reasons(_processed(rows, settings), settings)
    assert _reason_of(reasons, "R0001") == WITHDRAWAL


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, NOT_EXCLUDED),
        ({"wellbeing_attn": "1"}, FAILED_QUALITY),
        ({"include": "0"}, FAILED_QUALITY),
        ({"gender": "4"}, FAILED_QUALITY),
        ({"tracking_code": None}, MISSING_TRACKING),
        ({"tracking_code": None, "gender": "5"}, FAILED_QUALITY),
        ({"exited_at": None, "gender": "5"}, DID_NOT_FINISH),
        ({"withdrawn": "1", "exited_at": None}, WITHDRAWAL),
        ({"withdrawn": "1", "disqualified_at": "2024-03-01T09:02:00"}, SCREENOUT),
        ({"disqualified_at": "2024-03-01T09:02:00", "strata_region": "3"}, NOT_IN_REGION),
    ],
)
def test_later_reasons_overwrite_earlier_ones(settings, overrides, expected):
    rows = [make_record(1, **overrides), make_record(2), make_record(3)]
    reasons = exclusion_reasons(_processed(rows, settings), settings)
    assert _reason_of(reasons, "R0001") == expected
    assert _reason_of(reasons, "R0002") == NOT_EXCLUDED


def test_manual_exclusion_reports_failed_quality(settings):
    rows = [make_record(1), make_record(2)]
    reasons = exclusion_reasons(_processed(rows, settings, manual_ids=["R0002"]), settings)
    assert reasons["exclusion_reason"].tolist() == [NOT_EXCLUDED, FAILED_QUALITY]


def test_reason_counts_sum_to_record_count_and_keep_zero_rows(settings):
    rows = [
        make_record(1),
        make_record(2),
        make_record(3, withdrawn="1"),
        make_record(4, tracking_code=None),
        make_record(5, strata_region="2"),
    ]
    counts = reason_counts(exclusion_reasons(_processed(rows, settings), settings))

    assert counts["exclusion_reason"].tolist() == REASON_ORDER
    assert int(counts["count"].sum()) == 5
    by_reason = dict(zip(counts["exclusion_reason"], counts["count"]))
    assert by_reason[NOT_EXCLUDED] == 2
    assert by_reason[SCREENOUT] == 0
    assert by_reason[NOT_IN_REGION] == 1


def test_reason_counts_of_no_records():
    counts = reason_counts(pd.DataFrame({"response_id": [], "exclusion_reason": []}))
    assert counts["count"].tolist() == [0] * len(REASON_ORDER)
