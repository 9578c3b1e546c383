from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import pandas as pd
import requests

from ..config_runtime import ConfigurationError, CredentialError
from ..http_session import get_session, is_auth_failure

logger = logging.getLogger(__name__)

REMOTE_SOURCE = "remote export"


class SchemaError(ConfigurationError):
    """A required input column is absent."""


class SurveySourceError(Exception):
    """Raised when the remote survey export fails or returns an unexpected shape."""


def read_records_csv(path) -> pd.DataFrame:
    """
    Read a record table with every column as text, so answer codes and
    identifiers are compared exactly as exported.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Input CSV not found: {p}")
    return pd.read_csv(p, dtype=str, keep_default_na=True)


class SurveyExportClient:
    """Downloads the response table as CSV from the survey platform export URL."""

    def __init__(self, url: str, token: Optional[str] = None, timeout_seconds: int = 60, session: Optional[requests.Session] = None):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.session = session or get_session()

    def fetch(self) -> pd.DataFrame:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            resp = self.session.get(self.url, headers=headers, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise SurveySourceError(f"HTTP error while downloading survey export: {exc}") from exc

        if is_auth_failure(resp):
            raise CredentialError(f"Survey export credentials rejected (status={resp.status_code}).")
        if resp.status_code >= 400:
            preview = (resp.text or "")[:200]
            raise SurveySourceError(f"Survey export returned status {resp.status_code}. Preview: {preview}")

        try:
            return pd.read_csv(io.StringIO(resp.text), dtype=str, keep_default_na=True)
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            raise SurveySourceError(f"Survey export is not a readable CSV: {exc}") from exc


def missing_required_columns(df: pd.DataFrame, settings: dict) -> List[str]:
    cols = settings["columns"]
    required = [cols.get(key, key) for key in settings.get("required_columns") or []]
    return [c for c in required if c not in df.columns]


def validate_columns(df: pd.DataFrame, settings: dict) -> None:
    missing = missing_required_columns(df, settings)
    if missing:
        raise SchemaError(f"Record table is missing required columns: {', '.join(missing)}")

    id_col = settings["columns"]["id"]
    dupes = df[id_col].dropna().duplicated()
    if dupes.any():
        logger.warning("%d duplicate %s values in record table", int(dupes.sum()), id_col)


def load_records(
    settings: dict,
    cache_path: Optional[Path],
    input_csv: Optional[Path] = None,
    client: Optional[SurveyExportClient] = None,
    offline: bool = False,
) -> Tuple[pd.DataFrame, str]:
    """
    Load the raw record table and validate its columns.

    Order: explicit input CSV, then the remote export (unless offline), then
    the local cache. A failed download falls back to the local cache when it
    exists; rejected credentials never fall back.

    Returns (DataFrame, source description).
    """
    if input_csv is not None:
        df, source = read_records_csv(input_csv), str(input_csv)
    elif client is not None and not offline:
        try:
            df, source = client.fetch(), REMOTE_SOURCE
        except SurveySourceError as exc:
            if cache_path is None or not Path(cache_path).exists():
                raise
            logger.warning("%s; falling back to local cache %s", exc, cache_path)
            df, source = read_records_csv(cache_path), str(cache_path)
    else:
        if cache_path is None:
            raise ConfigurationError("No survey source: set paths.raw_cache_csv or pass an input CSV.")
        df, source = read_records_csv(cache_path), str(cache_path)

    validate_columns(df, settings)
    return df, source
