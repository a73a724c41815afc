"""Tests for reconsweep.cve_lookup - mocked HTTP, no live NVD calls."""

import json
from pathlib import Path

import pytest
import requests
import responses as responses_lib

from reconsweep.cache import CVECache
from reconsweep.cve_lookup import (
    NVD_BASE_URL,
    NVDClient,
    SlidingWindowLimiter,
    best_cvss,
    parse_cve_item,
)

FIXTURE_DIR = Path(__file__).parent / "fixtures"


def _load_nvd_fixture() -> dict:
    return json.loads((FIXTURE_DIR / "nvd_cve_sample.json").read_text())


def _make_nvd_response(cve_id: str, score: float = 7.5, severity: str = "HIGH") -> dict:
    """Build a minimal NVD API response dict."""
    return {
        "resultsPerPage": 1,
        "startIndex": 0,
        "totalResults": 1,
        "vulnerabilities": [
            {
                "cve": {
                    "id": cve_id,
                    "published": "2023-07-20T01:15:09.947",
                    "descriptions": [
                        {"lang": "en", "value": f"Test description for {cve_id}."}
                    ],
                    "metrics": {
                        "cvssMetricV31": [
                            {"cvssData": {"baseScore": score, "baseSeverity": severity}}
                        ]
                    },
                }
            }
        ],
    }


_EMPTY = {"resultsPerPage": 0, "startIndex": 0, "totalResults": 0, "vulnerabilities": []}


@pytest.fixture
def client():
    """NVDClient with no cache and no API key."""
    return NVDClient(api_key=None, cache=None)


@pytest.fixture
def client_with_cache(tmp_path):
    cache = CVECache(db_path=tmp_path / "cache.db", ttl=3600)
    return NVDClient(api_key=None, cache=cache), cache


# ---------------------------------------------------------------------------
# lookup_cve
# ---------------------------------------------------------------------------

class TestLookupCve:
    @responses_lib.activate
    def test_returns_record(self, client):
        responses_lib.add(
            responses_lib.GET,
            NVD_BASE_URL,
            json=_make_nvd_response("CVE-2023-38408", score=9.8, severity="CRITICAL"),
            status=200,
        )
        record = client.lookup_cve("CVE-2023-38408")
        assert record.cve_id == "CVE-2023-38408"
        assert record.cvss_score == 9.8
        assert record.severity == "CRITICAL"
        assert record.published == "2023-07-20"
        assert record.url == "https://nvd.nist.gov/vuln/detail/CVE-2023-38408"

    @responses_lib.activate
    def test_sends_cve_id_parameter(self, client):
        responses_lib.add(responses_lib.GET, NVD_BASE_URL, json=_EMPTY, status=200)
        client.lookup_cve("cve-2014-0160")
        assert len(responses_lib.calls) == 1
        assert "cveId=CVE-2014-0160" in responses_lib.calls[0].request.url

    @responses_lib.activate
    def test_unknown_cve_returns_none(self, client):
        responses_lib.add(responses_lib.GET, NVD_BASE_URL, json=_EMPTY, status=200)
        assert client.lookup_cve("CVE-1999-9999") is None

    @responses_lib.activate
    def test_api_key_header(self):
        responses_lib.add(responses_lib.GET, NVD_BASE_URL, json=_EMPTY, status=200)
        NVDClient(api_key="secret-key").lookup_cve("CVE-2023-0001")
        assert responses_lib.calls[0].request.headers["apiKey"] == "secret-key"

    @responses_lib.activate
    def test_network_failure_returns_none(self, client, mocker):
        mocker.patch("reconsweep.cve_lookup.time.sleep")
        responses_lib.add(
            responses_lib.GET,
            NVD_BASE_URL,
            body=requests.ConnectionError("connection refused"),
        )
        assert client.lookup_cve("CVE-2023-0001") is None
        assert len(responses_lib.calls) == 4

    @responses_lib.activate
    def test_rate_limited_then_success(self, client, mocker):
        sleep = mocker.patch("reconsweep.cve_lookup.time.sleep")
        responses_lib.add(
            responses_lib.GET, NVD_BASE_URL, status=429, headers={"Retry-After": "3"}
        )
        responses_lib.add(
            responses_lib.GET, NVD_BASE_URL, json=_make_nvd_response("CVE-2023-0001"), status=200
        )
        record = client.lookup_cve("CVE-2023-0001")
        assert record is not None
        sleep.assert_any_call(3.0)

    @responses_lib.activate
    def test_cache_is_used_on_second_call(self, client_with_cache):
        client, cache = client_with_cache
        responses_lib.add(
            responses_lib.GET, NVD_BASE_URL, json=_make_nvd_response("CVE-2023-0001"), status=200
        )
        first = client.lookup_cve("CVE-2023-0001")
        second = client.lookup_cve("CVE-2023-0001")
        assert len(responses_lib.calls) == 1
        assert first == second
        assert cache.get("CVE-2023-0001") == first

    @responses_lib.activate
    def test_miss_is_cached(self, client_with_cache):
        client, cache = client_with_cache
        responses_lib.add(responses_lib.GET, NVD_BASE_URL, json=_EMPTY, status=200)
        assert client.lookup_cve("CVE-1999-9999") is None
        assert client.lookup_cve("CVE-1999-9999") is None
        assert len(responses_lib.calls) == 1

    @responses_lib.activate
    def test_failure_is_not_cached(self, client_with_cache, mocker):
        mocker.patch("reconsweep.cve_lookup.time.sleep")
        client, cache = client_with_cache
        responses_lib.add(
            responses_lib.GET, NVD_BASE_URL, body=requests.ConnectionError("down")
        )
        assert client.lookup_cve("CVE-2023-0001") is None
        assert cache.contains("CVE-2023-0001") is False


# ---------------------------------------------------------------------------
# parse_cve_item: CVSS extraction
# ---------------------------------------------------------------------------

class TestCvssExtraction:
    def test_v31_preferred_over_v30(self):
        item = {
            "cve": {
                "id": "CVE-2023-0001",
                "published": "2023-01-01",
                "descriptions": [{"lang": "en", "value": "Test"}],
                "metrics": {
                    "cvssMetricV31": [{"cvssData": {"baseScore": 9.8, "baseSeverity": "CRITICAL"}}],
                    "cvssMetricV30": [{"cvssData": {"baseScore": 5.0, "baseSeverity": "MEDIUM"}}],
                },
            }
        }
        record = parse_cve_item(item)
        assert record.cvss_score == 9.8
        assert record.severity == "CRITICAL"

    def test_v2_severity_outside_cvss_data(self):
        item = {
            "cve": {
                "id": "CVE-2009-0001",
                "published": "2009-01-01",
                "descriptions": [{"lang": "en", "value": "Old"}],
                "metrics": {
                    "cvssMetricV2": [{"cvssData": {"baseScore": 4.3}, "baseSeverity": "MEDIUM"}],
                },
            }
        }
        record = parse_cve_item(item)
        assert record.cvss_score == 4.3
        assert record.severity == "MEDIUM"

    def test_no_metrics_returns_zero_score(self):
        item = {
            "cve": {
                "id": "CVE-2023-0003",
                "published": "2023-01-01",
                "descriptions": [{"lang": "en", "value": "Old CVE with no CVSS"}],
                "metrics": {},
            }
        }
        record = parse_cve_item(item)
        assert record.cvss_score == 0.0
        assert record.severity == "NONE"

    def test_description_truncated_at_300(self):
        item = {
            "cve": {
                "id": "CVE-2023-0004",
                "published": "2023-01-01",
                "descriptions": [{"lang": "en", "value": "A" * 400}],
                "metrics": {},
            }
        }
        record = parse_cve_item(item)
        assert len(record.description) == 300
        assert record.description.endswith("...")

    def test_missing_id_returns_none(self):
        assert parse_cve_item({"cve": {"descriptions": []}}) is None


class TestNvdFixture:
    def test_parse_real_nvd_response(self):
        item = _load_nvd_fixture()["vulnerabilities"][0]
        record = parse_cve_item(item)
        assert record.cve_id == "CVE-2021-41773"
        assert record.cvss_score == 7.5
        assert record.severity == "HIGH"
        assert record.description.startswith("A flaw was found")
        assert record.published == "2021-10-05"


class TestBestCvss:
    def test_v30_used_when_v31_missing(self):
        metrics = {"cvssMetricV30": [{"cvssData": {"baseScore": 6.1, "baseSeverity": "medium"}}]}
        assert best_cvss(metrics) == (6.1, "MEDIUM")

    def test_severity_derived_from_score(self):
        metrics = {"cvssMetricV2": [{"cvssData": {"baseScore": 9.3}}]}
        assert best_cvss(metrics) == (9.3, "CRITICAL")

    def test_empty_metric_list_skipped(self):
        metrics = {"cvssMetricV31": [], "cvssMetricV2": [{"cvssData": {"baseScore": 5.0}, "baseSeverity": "MEDIUM"}]}
        assert best_cvss(metrics) == (5.0, "MEDIUM")


class TestSlidingWindowLimiter:
    def test_nvd_limits(self):
        assert SlidingWindowLimiter.for_nvd(has_api_key=False).limit == 5
        assert SlidingWindowLimiter.for_nvd(has_api_key=True).limit == 50

    def test_waits_once_window_is_full(self, mocker):
        sleep = mocker.patch("reconsweep.cve_lookup.time.sleep")
        limiter = SlidingWindowLimiter(limit=2, window=30.0)
        assert limiter.wait() == 0.0
        assert limiter.wait() == 0.0
        assert limiter.wait() > 29.0
        sleep.assert_called_once()
