"""
App engagement metrics per tracking code.

Counts come from the analytics reporting API and are cached in a CSV keyed
by tracking code; a code already in the cache is not queried again.
"""

import logging
from typing import Callable, Dict, Iterable, Optional

import pandas as pd
import requests

from ..clean_normalise.codes import column_or_missing, normalise_key
from ..config_runtime import CredentialError
from ..http_session import get_session, is_auth_failure

logger = logging.getLogger(__name__)

EVENT_NAMES = ["first_visit", "page_view", "screen_view", "session_start", "user_engagement"]
DURATION_COLUMN = "engagement_duration"
METRIC_COLUMNS = EVENT_NAMES + [DURATION_COLUMN]
KEY_COLUMN = "tracking_code"

Fetcher = Callable[[str], Optional[Dict[str, float]]]


class GA4Client:
    """Event counts for one tracking code from a GA4 property (Data API runReport)."""

    def __init__(
        self,
        property_id: str,
        access_token: str,
        tracking_dimension: str = "customUser:tracking_code",
        start_date: str = "2024-01-01",
        end_date: str = "today",
        base_url: str = "https://analyticsdata.googleapis.com/v1beta",
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
    ):
        if not property_id or not access_token:
            raise CredentialError("GA4Client requires a property id and an access token.")
        self.property_id = str(property_id)
        self.access_token = access_token
        self.tracking_dimension = tracking_dimension
        self.start_date = start_date
        self.end_date = end_date
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or get_session()

    @property
    def report_url(self) -> str:
        return f"{self.base_url}/properties/{self.property_id}:runReport"

    def _report_body(self, tracking_code: str) -> dict:
        return {
            "dateRanges": [{"startDate": self.start_date, "endDate": self.end_date}],
            "dimensions": [{"name": "eventName"}],
            "metrics": [{"name": "eventCount"}, {"name": "userEngagementDuration"}],
            "dimensionFilter": {
                "filter": {
                    "fieldName": self.tracking_dimension,
                    "stringFilter": {"matchType": "EXACT", "value": tracking_code},
                }
            },
        }

    def _post(self, body: dict) -> requests.Response:
        return self.session.post(
            self.report_url,
            json=body,
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout_seconds,
        )

    def validate(self) -> None:
        """Fatal if the property id / token pair is rejected or unreachable."""
        body = self._report_body("__credential_check__")
        body["limit"] = 1
        try:
            resp = self._post(body)
        except requests.RequestException as exc:
            raise CredentialError(f"Could not validate analytics credentials: {exc}") from exc
        if is_auth_failure(resp) or resp.status_code >= 400:
            raise CredentialError(f"Analytics credentials rejected (status={resp.status_code}).")

    def event_counts(self, tracking_code: str) -> Optional[Dict[str, float]]:
        """
        Counts for the five tracked events plus summed engagement duration.
        Returns None when the call fails or the response has an unexpected shape.
        """
        try:
            resp = self._post(self._report_body(tracking_code))
        except requests.RequestException as exc:
            logger.warning("Analytics query for %s failed: %s", tracking_code, exc)
            return None

        if is_auth_failure(resp):
            raise CredentialError(f"Analytics credentials rejected (status={resp.status_code}).")
        if resp.status_code >= 400:
            logger.warning("Analytics query for %s returned status %s", tracking_code, resp.status_code)
            return None

        try:
            data = resp.json()
        except ValueError:
            logger.warning("Non-JSON analytics response for %s", tracking_code)
            return None
        return parse_report(data)


def parse_report(data) -> Optional[Dict[str, float]]:
    """
    Reduce a runReport response to {event: count, ..., engagement_duration}.
    Events not returned are 0; other event names are ignored.
    """
    if not isinstance(data, dict):
        return None
    rows = data.get("rows") or []
    if not isinstance(rows, list):
        return None

    out = {name: 0.0 for name in METRIC_COLUMNS}
    try:
        for row in rows:
            event = row["dimensionValues"][0]["value"]
            metrics = row["metricValues"]
            duration = float(metrics[1]["value"]) if len(metrics) > 1 else 0.0
            out[DURATION_COLUMN] += duration
            if event in EVENT_NAMES:
                out[event] += float(metrics[0]["value"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        logger.warning("Malformed analytics report row: %s", exc)
        return None
    return out


def empty_metrics_cache() -> pd.DataFrame:
    return pd.DataFrame(columns=[KEY_COLUMN] + METRIC_COLUMNS)


def update_metrics_cache(cache: pd.DataFrame, tracking_codes: Iterable, fetch: Fetcher) -> pd.DataFrame:
    """
    Query every distinct, non-missing tracking code not yet cached and append
    the results. Codes whose query fails are left out and retried next run.
    """
    cache = cache if cache is not None else empty_metrics_cache()
    known = {normalise_key(c) for c in cache.get(KEY_COLUMN, pd.Series(dtype=object))}
    pending = []
    for code in tracking_codes:
        key = normalise_key(code)
        if key is None or key in known or key in pending:
            continue
        pending.append(key)

    if not pending:
        return cache.copy()

    logger.info("Fetching engagement metrics for %d tracking codes", len(pending))
    rows = []
    for code in pending:
        metrics = fetch(code)
        if metrics is None:
            continue
        rows.append({KEY_COLUMN: code, **{k: metrics.get(k, 0.0) for k in METRIC_COLUMNS}})

    if not rows:
        return cache.copy()
    added = pd.DataFrame(rows, columns=[KEY_COLUMN] + METRIC_COLUMNS)
    if cache.empty:
        return added
    return pd.concat([cache, added], ignore_index=True)


def merge_metrics(records: pd.DataFrame, cache: pd.DataFrame, tracking_col: str) -> pd.DataFrame:
    """Left-join cached metrics onto records by tracking code."""
    df_out = records.copy()
    keys = column_or_missing(df_out, tracking_col).map(normalise_key)
    if cache is None or cache.empty:
        for col in METRIC_COLUMNS:
            df_out[col] = float("nan")
        return df_out

    lookup = cache.copy()
    lookup[KEY_COLUMN] = lookup[KEY_COLUMN].map(normalise_key)
    lookup = lookup[lookup[KEY_COLUMN].notna()]
    lookup = lookup.drop_duplicates(subset=[KEY_COLUMN], keep="first").set_index(KEY_COLUMN)
    for col in METRIC_COLUMNS:
        values = pd.to_numeric(lookup[col], errors="coerce") if col in lookup.columns else pd.Series(dtype=float)
        df_out[col] = keys.map(values).astype(float)
    return df_out
