import numpy as np
import pandas as pd
import pytest
import requests

from conftest import FakeResponse, FakeSession
from survey_qc.analytics.engagement import (
    METRIC_COLUMNS,
    GA4Client,
    empty_metrics_cache,
    merge_metrics,
    parse_report,
    update_metrics_cache,
)
from survey_qc.config_runtime import CredentialError


def _row(event, count, duration):
    return {"dimensionValues": [{"value": event}], "metricValues": [{"value": str(count)}, {"value": str(duration)}]}


def test_parse_report_counts_known_events_and_sums_duration():
    data = {"rows": [_row("page_view", 12, 30.5), _row("session_start", 3, 10), _row("scroll", 40, 5)]}

    out = parse_report(data)

    assert out["page_view"] == 12
    assert out["session_start"] == 3
    assert out["first_visit"] == 0
    assert "scroll" not in out
    assert out["engagement_duration"] == pytest.approx(45.5)


def test_parse_report_without_rows_is_all_zero():
    assert parse_report({}) == {name: 0.0 for name in METRIC_COLUMNS}


@pytest.mark.parametrize("data", [None, [], {"rows": "x"}, {"rows": [{"dimensionValues": []}]}])
def test_parse_report_rejects_malformed_responses(data):
    assert parse_report(data) is None


def test_event_counts_filters_on_tracking_code():
    session = FakeSession([FakeResponse(200, {"rows": [_row("first_visit", 1, 0)]})])
    client = GA4Client("123", "tok", session=session)

    out = client.event_counts("TC0001")

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url == "https://analyticsdata.googleapis.com/v1beta/properties/123:runReport"
    assert kwargs["headers"] == {"Authorization": "Bearer tok"}
    flt = kwargs["json"]["dimensionFilter"]["filter"]
    assert flt["fieldName"] == "customUser:tracking_code"
    assert flt["stringFilter"] == {"matchType": "EXACT", "value": "TC0001"}
    assert out["first_visit"] == 1


@pytest.mark.parametrize("response", [FakeResponse(500), FakeResponse(200, None, text="<html>"), requests.Timeout("slow")])
def test_event_counts_failures_are_recoverable(response):
    client = GA4Client("123", "tok", session=FakeSession([response]))
    assert client.event_counts("TC0001") is None


def test_event_counts_rejected_token_is_fatal():
    client = GA4Client("123", "tok", session=FakeSession([FakeResponse(401)]))
    with pytest.raises(CredentialError):
        client.event_counts("TC0001")


def test_validate_rejects_bad_credentials():
    client = GA4Client("123", "tok", session=FakeSession([FakeResponse(403)]))
    with pytest.raises(CredentialError):
        client.validate()


def test_client_requires_both_credentials():
    with pytest.raises(CredentialError):
        GA4Client("123", None)


def test_cache_only_queries_new_distinct_codes():
    cache = pd.DataFrame([{"tracking_code": "TC1", **{m: 1.0 for m in METRIC_COLUMNS}}])
    fetched = []

    def fetch(code):
        fetched.append(code)
        return None if code == "TC3" else {"page_view": 5.0}

    out = update_metrics_cache(cache, ["TC1", "TC2", "TC2", None, "TC3", float("nan")], fetch)

    assert fetched == ["TC2", "TC3"]
    assert out["tracking_code"].tolist() == ["TC1", "TC2"]
    assert out.loc[1, "page_view"] == 5.0
    assert out.loc[1, "first_visit"] == 0.0
    assert len(cache) == 1


def test_cache_queries_tracking_codes_verbatim():
    fetched = []

    def fetch(code):
        fetched.append(code)
        return {"page_view": 1.0}

    out = update_metrics_cache(None, ["0042", "42", " 1e3 ", "0042"], fetch)

    assert fetched == ["0042", "42", "1e3"]
    assert out["tracking_code"].tolist() == ["0042", "42", "1e3"]


def test_cache_starts_empty():
    out = update_metrics_cache(None, ["TC1"], lambda code: {"user_engagement": 2.0})
    assert list(out.columns) == list(empty_metrics_cache().columns)
    assert out["user_engagement"].tolist() == [2.0]


def test_merge_is_a_left_join_on_tracking_code():
    records = pd.DataFrame({"response_id": ["R1", "R2", "R3"], "tracking_code": ["TC1", "TC9", None]})
    cache = pd.DataFrame([{"tracking_code": "TC1", **{m: 2.0 for m in METRIC_COLUMNS}}])

    out = merge_metrics(records, cache, "tracking_code")

    assert len(out) == 3
    assert out.loc[0, "page_view"] == 2.0
    assert np.isnan(out.loc[1, "page_view"])
    assert np.isnan(out.loc[2, "engagement_duration"])


def test_merge_without_cache_adds_empty_metric_columns():
    records = pd.DataFrame({"tracking_code": ["TC1"]})
    out = merge_metrics(records, empty_metrics_cache(), "tracking_code")
    assert all(col in out.columns for col in METRIC_COLUMNS)
    assert out[METRIC_COLUMNS].isna().all().all()


def test_merge_does_not_conflate_leading_zero_codes():
    records = pd.DataFrame({"tracking_code": ["0042", "42"]})
    cache = pd.DataFrame([
        {"tracking_code": "0042", **{m: 1.0 for m in METRIC_COLUMNS}},
        {"tracking_code": "42", **{m: 9.0 for m in METRIC_COLUMNS}},
    ])
    out = merge_metrics(records, cache, "tracking_code")
    assert out["page_view"].tolist() == [1.0, 9.0]
