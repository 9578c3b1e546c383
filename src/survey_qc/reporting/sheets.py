import logging
from typing import List, Optional

import pandas as pd
import requests

from ..config_runtime import CredentialError
from ..http_session import get_session, is_auth_failure

logger = logging.getLogger(__name__)

# Last column of a default-size sheet.
MAX_COLUMN = "ZZ"


def column_letter(index: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA."""
    letters = ""
    while index > 0:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def crosstab_rows(table: pd.DataFrame) -> List[List]:
    """Header row plus one row per label, values as plain ints."""
    header = [table.index.name or ""] + [str(c) for c in table.columns]
    rows = [header]
    for label, values in table.iterrows():
        rows.append([str(label)] + [int(v) for v in values.tolist()])
    return rows


class SheetsPublisher:
    """Replaces the contents of one sheet of a Google Sheets document."""

    def __init__(
        self,
        spreadsheet_id: str,
        access_token: str,
        sheet_name: str = "Quota",
        base_url: str = "https://sheets.googleapis.com/v4",
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
    ):
        if not spreadsheet_id or not access_token:
            raise CredentialError("SheetsPublisher requires a document id and an access token.")
        self.spreadsheet_id = spreadsheet_id
        self.access_token = access_token
        self.sheet_name = sheet_name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or get_session()

    @property
    def values_url(self) -> str:
        return f"{self.base_url}/spreadsheets/{self.spreadsheet_id}/values"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _check(self, resp: requests.Response, action: str) -> bool:
        if is_auth_failure(resp):
            raise CredentialError(f"Spreadsheet credentials rejected (status={resp.status_code}).")
        if resp.status_code >= 400:
            preview = (resp.text or "")[:200]
            logger.warning("Spreadsheet %s failed with status %s. Preview: %s", action, resp.status_code, preview)
            return False
        return True

    def leftover_ranges(self, n_rows: int, n_cols: int) -> List[str]:
        """A1 ranges below and to the right of an n_rows x n_cols block at A1."""
        sheet = self.sheet_name
        return [
            f"{sheet}!A{n_rows + 1}:{MAX_COLUMN}",
            f"{sheet}!{column_letter(n_cols + 1)}1:{MAX_COLUMN}{n_rows}",
        ]

    def publish(self, table: pd.DataFrame) -> bool:
        """
        Write the table from A1, then clear whatever an earlier, larger table
        left below and to the right of it. A failed write leaves the previous
        contents in place. Returns False when either call fails; local outputs
        are unaffected.
        """
        rows = crosstab_rows(table)
        n_cols = max(len(r) for r in rows)
        try:
            resp = self.session.put(
                f"{self.values_url}/{self.sheet_name}!A1",
                params={"valueInputOption": "RAW"},
                json={"range": f"{self.sheet_name}!A1", "majorDimension": "ROWS", "values": rows},
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
            if not self._check(resp, "update"):
                return False

            resp = self.session.post(
                f"{self.values_url}:batchClear",
                json={"ranges": self.leftover_ranges(len(rows), n_cols)},
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
            if not self._check(resp, "clear"):
                return False
        except requests.RequestException as exc:
            logger.warning("Could not publish quota table: %s", exc)
            return False

        logger.info("Published quota table to sheet '%s'", self.sheet_name)
        return True
