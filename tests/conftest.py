from datetime import datetime, timedelta

import pandas as pd
import pytest

from survey_qc.config_runtime import _default_settings, validate_settings


BASE_START = datetime(2024, 3, 1, 9, 0, 0)


def make_record(index: int = 1, minutes: float = 20.0, **overrides) -> dict:
    """A record that passes every check unless overridden."""
    started = BASE_START + timedelta(hours=index)
    row = {
        "response_id": f"R{index:04d}",
        "tracking_code": f"TC{index:04d}",
        "started_at": started.isoformat(),
        "exited_at": (started + timedelta(minutes=minutes)).isoformat(),
        "disqualified_at": None,
        "age": "18",
        "screener_age": "18",
        "gender": "1",
        "province": "1",
        "strata_region": "1",
        "include": "1",
        "withdrawn": "0",
        "ip_address": f"203.0.113.{index}",
    }
    for n in range(1, 11):
        row[f"distress_{n}"] = str((n % 5) + 1)
    row["distress_attn"] = row["distress_5"]
    for n in range(1, 16):
        row[f"wellbeing_{n}"] = str(n % 6)
    row["wellbeing_attn"] = "3"
    for n in range(1, 13):
        row[f"support_{n}"] = str((n % 7) + 1)
    row.update(overrides)
    return row


def make_frame(rows) -> pd.DataFrame:
    return pd.DataFrame(rows)


@pytest.fixture
def settings():
    return validate_settings(_default_settings())


@pytest.fixture
def clean_batch():
    """Five clean records with completion times 18-22 minutes."""
    return make_frame([make_record(i, minutes=m) for i, m in enumerate([18, 19, 20, 21, 22], start=1)])


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Records every call and replays queued responses (or raises queued exceptions)."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def _next(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            return FakeResponse(200, {})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._next("PUT", url, **kwargs)
