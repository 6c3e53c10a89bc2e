"""
tests/test_fetcher.py -- Unit tests for core/fetcher.py.

The module-level requests session is patched, so these tests never reach
NVD. They pin the query parameters we send and the failure contract:
every fetch function logs and returns None / [] instead of raising.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import requests

from core.fetcher import NVD_API, _nvd_date, fetch_nvd, fetch_recent, search_cves

_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


def _body(*ids: str) -> dict:
    return {"vulnerabilities": [{"cve": {"id": i}} for i in ids]}


class TestNvdDate:
    def test_format(self):
        assert _nvd_date(_NOW) == "2025-06-01T12:00:00.000+00:00"

    def test_naive_treated_as_utc(self):
        assert _nvd_date(_NOW.replace(tzinfo=None)) == "2025-06-01T12:00:00.000+00:00"


class TestFetchRecent:
    def test_window_and_severity_params(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body("CVE-2025-0001"))
            records = fetch_recent(days=7, now=_NOW, severity="high")

        assert records == [{"id": "CVE-2025-0001"}]
        args, kwargs = session.get.call_args
        assert args[0] == NVD_API
        params = kwargs["params"]
        assert params["lastModStartDate"] == "2025-05-25T12:00:00.000+00:00"
        assert params["lastModEndDate"] == "2025-06-01T12:00:00.000+00:00"
        assert params["cvssV3Severity"] == "HIGH"
        assert params["startIndex"] == 0

    def test_window_clamped_to_120_days(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body())
            fetch_recent(days=365, now=_NOW)
        params = session.get.call_args.kwargs["params"]
        assert params["lastModStartDate"] == "2025-01-31T12:00:00.000+00:00"

    def test_network_error_returns_empty_list(self):
        with patch("core.fetcher._session") as session:
            session.get.side_effect = requests.ConnectionError("down")
            assert fetch_recent(now=_NOW) == []

    def test_http_error_returns_empty_list(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response({}, status=503)
            assert fetch_recent(now=_NOW) == []


class TestFetchNvd:
    def test_single_record(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body("CVE-2021-44228"))
            assert fetch_nvd("CVE-2021-44228") == {"id": "CVE-2021-44228"}
        assert session.get.call_args.kwargs["params"]["cveId"] == "CVE-2021-44228"

    def test_absent_record(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body())
            assert fetch_nvd("CVE-2099-0001") is None

    def test_api_key_sent_as_header(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body())
            fetch_nvd("CVE-2021-44228", api_key="secret")
        assert session.get.call_args.kwargs["headers"] == {"apiKey": "secret"}


class TestSearchCves:
    def test_keyword_search(self):
        with patch("core.fetcher._session") as session:
            session.get.return_value = _response(_body("CVE-2024-1", "CVE-2024-2"))
            assert len(search_cves("openssl")) == 2
        params = session.get.call_args.kwargs["params"]
        assert params["keywordSearch"] == "openssl"
        assert params["resultsPerPage"] == 100

    def test_invalid_json_returns_empty_list(self):
        with patch("core.fetcher._session") as session:
            resp = _response({})
            resp.json.side_effect = ValueError("not json")
            session.get.return_value = resp
            assert search_cves("openssl") == []
