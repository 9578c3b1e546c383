"""
IP-derived region enrichment.

The region cache maps record identifier -> region name. It only grows: an
identifier with an entry is never looked up again and its entry is never
replaced. Lookups go out once per distinct uncached address.
"""

import ipaddress
import logging
from typing import Callable, Dict, List, Mapping, Optional

import pandas as pd
import requests

from ..clean_normalise.codes import column_or_missing, is_missing, normalise_key
from ..config_runtime import CredentialError
from ..http_session import get_session, is_auth_failure

logger = logging.getLogger(__name__)

Resolver = Callable[[List[str]], Dict[str, dict]]


class IPInfoClient:
    """Thin client for an ipinfo-style batch lookup API."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://ipinfo.io",
        timeout_seconds: int = 30,
        batch_size: int = 100,
        session: Optional[requests.Session] = None,
    ):
        if not token:
            raise CredentialError("IPInfoClient requires a token.")
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.batch_size = max(1, int(batch_size))
        self.session = session or get_session()

    def validate(self) -> None:
        """
        Check the token before any record is processed.
        Any failure here is fatal, timeouts included.
        """
        try:
            resp = self.session.get(
                f"{self.base_url}/me",
                params={"token": self.token},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CredentialError(f"Could not validate IP lookup token: {exc}") from exc
        if is_auth_failure(resp) or resp.status_code >= 400:
            raise CredentialError(f"IP lookup token rejected (status={resp.status_code}).")

    def _lookup_batch(self, batch: List[str]) -> Dict[str, dict]:
        try:
            resp = self.session.post(
                f"{self.base_url}/batch",
                params={"token": self.token},
                json=batch,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("IP lookup batch of %d failed: %s", len(batch), exc)
            return {}

        if is_auth_failure(resp):
            raise CredentialError(f"IP lookup token rejected (status={resp.status_code}).")
        if resp.status_code >= 400:
            logger.warning("IP lookup batch returned status %s; leaving %d addresses unresolved.", resp.status_code, len(batch))
            return {}

        try:
            data = resp.json()
        except ValueError:
            preview = (resp.text or "")[:200]
            logger.warning("Non-JSON IP lookup response. Preview: %s", preview)
            return {}

        if not isinstance(data, dict):
            logger.warning("Unexpected IP lookup response type: %s", type(data).__name__)
            return {}
        return data

    def lookup(self, addresses: List[str]) -> Dict[str, dict]:
        out: Dict[str, dict] = {}
        for i in range(0, len(addresses), self.batch_size):
            out.update(self._lookup_batch(addresses[i:i + self.batch_size]))
        return out


def extract_region(info) -> Optional[str]:
    """
    The "region" field of one lookup response, or None when the response is
    malformed, a bogon, or has no region.
    """
    if not isinstance(info, dict):
        return None
    if info.get("bogon"):
        return None
    region = info.get("region")
    if not isinstance(region, str) or not region.strip():
        return None
    return region.strip()


def normalise_ip(value) -> Optional[str]:
    if is_missing(value):
        return None
    text = str(value).strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        logger.debug("Skipping invalid IP address %r", text)
        return None


def collect_addresses(records: pd.DataFrame, address_list: pd.DataFrame, id_col: str, ip_col: str) -> Dict[str, str]:
    """
    identifier -> IP address for every record that has one.
    The record table's own address wins; the workbook address list fills gaps.
    """
    out: Dict[str, str] = {}
    if address_list is not None and not address_list.empty:
        for rid, ip in zip(address_list[id_col], address_list[ip_col]):
            key, addr = normalise_key(rid), normalise_ip(ip)
            if key is not None and addr is not None:
                out[key] = addr

    ids = column_or_missing(records, id_col)
    ips = column_or_missing(records, ip_col)
    for rid, ip in zip(ids, ips):
        key, addr = normalise_key(rid), normalise_ip(ip)
        if key is not None and addr is not None:
            out[key] = addr
    return out


def update_region_cache(
    cache: Mapping[str, str],
    addresses: Mapping[str, str],
    resolver: Resolver,
) -> Dict[str, str]:
    """
    Return a new cache with entries for uncached identifiers whose address
    resolves to a region. Existing entries are copied unchanged.
    """
    updated = dict(cache)
    pending = {rid: ip for rid, ip in addresses.items() if rid not in updated and ip}
    if not pending:
        return updated

    distinct = list(dict.fromkeys(pending.values()))
    logger.info("Looking up %d distinct addresses for %d records", len(distinct), len(pending))
    responses = resolver(distinct) or {}

    added = 0
    for rid, ip in pending.items():
        region = extract_region(responses.get(ip))
        if region is None:
            continue
        updated[rid] = region
        added += 1
    logger.info("Resolved %d of %d pending records", added, len(pending))
    return updated


def attach_regions(records: pd.DataFrame, cache: Mapping[str, str], id_col: str, region_col: str = "ip_region") -> pd.DataFrame:
    """
    Join cached regions by exact identifier. Records without an entry get a
    missing region (None), never an empty string.
    """
    df_out = records.copy()
    ids = column_or_missing(df_out, id_col).map(normalise_key)
    df_out[region_col] = ids.map(lambda rid: cache.get(rid) if rid is not None else None).astype(object)
    return df_out
