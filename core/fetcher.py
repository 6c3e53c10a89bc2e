"""
fetcher.py -- All external data fetching (NVD CVE API 2.0).

NVD optionally accepts an API key for higher rate limits. Polling cadence,
retry and backoff are the caller's concern; every function here makes a
single request and returns None / [] on failure after logging it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import requests

from .config import get_settings

logger = logging.getLogger("sigrisk.fetcher")

NVD_API = "https://services.nvd.nist.gov/rest/json/cves/2.0"
USER_AGENT = "SIGRISK/1.0"
MAX_RESULTS_PER_PAGE = 2000

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- NVD is a known public
# API, 3 hops is generous and protects against redirect chains.
_session = requests.Session()
_session.max_redirects = 3
_session.headers["User-Agent"] = USER_AGENT


def _nvd_date(value: datetime) -> str:
    """NVD expects extended ISO 8601 with milliseconds and an explicit offset."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000+00:00")


def _headers(api_key: Optional[str]) -> dict[str, str]:
    # Explicit caller argument takes precedence; fall back to settings.
    effective_key = api_key or get_settings().nvd_api_key
    return {"apiKey": effective_key} if effective_key else {}


def fetch_nvd_page(
    params: dict[str, Any],
    start_index: int = 0,
    results_per_page: int = 500,
    api_key: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    """Fetch one page of the NVD CVE API and return the decoded JSON body.

    Args:
        params:           NVD query parameters (keywordSearch, cvssV3Severity,
                          lastModStartDate, ...). Passed through verbatim.
        start_index:      Zero-based offset of the first result.
        results_per_page: Page size, capped at the NVD maximum.
        api_key:          Optional key override.
    """
    query = dict(params)
    query["startIndex"] = start_index
    query["resultsPerPage"] = min(results_per_page, MAX_RESULTS_PER_PAGE)
    try:
        resp = _session.get(NVD_API, params=query, headers=_headers(api_key), timeout=get_settings().nvd_timeout)
        if resp.status_code == 403:
            logger.error("NVD rejected the request (403) -- check NVD_API_KEY")
        elif resp.status_code == 429:
            logger.warning("NVD rate limit reached")
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("NVD page fetch failed (startIndex=%d): %s", start_index, e)
        return None


def fetch_nvd(cve_id: str, api_key: Optional[str] = None) -> Optional[dict[str, Any]]:
    """Fetch a single raw CVE record from NVD. Returns None if absent or on failure."""
    body = fetch_nvd_page({"cveId": cve_id}, results_per_page=1, api_key=api_key)
    if body is None:
        return None
    vulns = body.get("vulnerabilities", [])
    return vulns[0].get("cve") if vulns else None


def fetch_recent(
    days: int = 7,
    now: Optional[datetime] = None,
    severity: Optional[str] = None,
    api_key: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Return raw CVE records modified in the last `days` days (first page only).

    NVD caps a lastMod window at 120 days; larger values are clamped.
    """
    end = now or datetime.now(timezone.utc)
    start = end - timedelta(days=min(days, 120))
    params: dict[str, Any] = {
        "lastModStartDate": _nvd_date(start),
        "lastModEndDate": _nvd_date(end),
    }
    if severity:
        params["cvssV3Severity"] = severity.upper()
    body = fetch_nvd_page(params, api_key=api_key)
    if body is None:
        return []
    return [v["cve"] for v in body.get("vulnerabilities", []) if "cve" in v]


def search_cves(keyword: str, severity: Optional[str] = None, api_key: Optional[str] = None) -> list[dict[str, Any]]:
    """Keyword search against NVD, first 100 matches."""
    params: dict[str, Any] = {"keywordSearch": keyword}
    if severity:
        params["cvssV3Severity"] = severity.upper()
    body = fetch_nvd_page(params, results_per_page=100, api_key=api_key)
    if body is None:
        return []
    return [v["cve"] for v in body.get("vulnerabilities", []) if "cve" in v]
