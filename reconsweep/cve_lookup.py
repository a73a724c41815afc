"""NVD API v2 client used to replace approximate CVSS scores with published ones."""

import logging
import threading
import time
from collections import deque
from typing import Deque, Iterable, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__
from .cache import CVECache
from .models import CVERecord
from .utils import cvss_to_severity

logger = logging.getLogger(__name__)

NVD_BASE_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
NVD_DETAIL_URL = "https://nvd.nist.gov/vuln/detail/{cve_id}"

# Newest CVSS version first
_METRIC_KEYS = ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2")
_MAX_DESCRIPTION = 300
_ATTEMPTS = 4


class SlidingWindowLimiter:
    """
    Allows at most ``limit`` calls in any ``window`` seconds.

    NVD grants 5 requests per 30 s without an API key and 50 with one.
    """

    def __init__(self, limit: int, window: float = 30.0):
        self.limit = limit
        self.window = window
        self._stamps: Deque[float] = deque(maxlen=limit)
        self._lock = threading.Lock()

    @classmethod
    def for_nvd(cls, has_api_key: bool) -> "SlidingWindowLimiter":
        return cls(limit=50 if has_api_key else 5)

    def wait(self) -> float:
        """Block until a slot frees up. Returns the seconds spent waiting."""
        with self._lock:
            waited = 0.0
            if len(self._stamps) == self.limit:
                waited = max(0.0, self._stamps[0] + self.window - time.monotonic())
                if waited:
                    logger.debug("NVD rate limit reached, pausing %.1fs", waited)
                    time.sleep(waited)
            self._stamps.append(time.monotonic())
            return waited


def _english_description(descriptions: Iterable[dict]) -> str:
    text = next((d.get("value", "") for d in descriptions if d.get("lang") == "en"), "")
    if len(text) > _MAX_DESCRIPTION:
        text = text[: _MAX_DESCRIPTION - 3] + "..."
    return text


def best_cvss(metrics: dict) -> Tuple[float, str]:
    """(base score, NVD severity) from the newest CVSS version present, or (0.0, "NONE")."""
    for key in _METRIC_KEYS:
        entries = metrics.get(key) or []
        if not entries:
            continue
        metric = entries[0]
        data = metric.get("cvssData", {})
        score = float(data.get("baseScore", 0.0))
        # v2 keeps baseSeverity beside cvssData rather than inside it
        severity = data.get("baseSeverity") or metric.get("baseSeverity")
        if not severity:
            severity = cvss_to_severity(score).value if score > 0 else "NONE"
        return score, severity.upper()
    return 0.0, "NONE"


def parse_cve_item(item: dict) -> Optional[CVERecord]:
    """Turn one entry of the NVD ``vulnerabilities`` array into a CVERecord, or None."""
    try:
        cve = item.get("cve", item)
        cve_id = cve["id"]
        score, severity = best_cvss(cve.get("metrics") or {})
        return CVERecord(
            cve_id=cve_id,
            cvss_score=score,
            severity=severity,
            description=_english_description(cve.get("descriptions") or []),
            published=(cve.get("published") or "")[:10],
            url=NVD_DETAIL_URL.format(cve_id=cve_id),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.debug("Unparseable NVD item: %s", exc)
        return None


class NVDClient:
    """
    Looks up single CVE records by id.

    Scans can run in parallel, so lookups share one rate limiter and are
    answered from the cache whenever possible.
    """

    def __init__(self, api_key: Optional[str] = None, cache: Optional[CVECache] = None):
        self.api_key = api_key
        self.cache = cache
        self.limiter = SlidingWindowLimiter.for_nvd(has_api_key=bool(api_key))
        self.session = requests.Session()
        # Server errors are retried by urllib3; 429s are handled in _fetch
        self.session.mount("https://", HTTPAdapter(max_retries=Retry(
            total=3, backoff_factor=2, status_forcelist=[500, 502, 503], allowed_methods=["GET"],
        )))
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": f"ReconSweep/{__version__}",
        })
        if api_key:
            self.session.headers["apiKey"] = api_key

    def _fetch(self, cve_id: str) -> dict:
        """
        GET the NVD record for cve_id.

        Raises:
            requests.RequestException: once every attempt has failed
        """
        for attempt in range(1, _ATTEMPTS + 1):
            self.limiter.wait()
            try:
                resp = self.session.get(NVD_BASE_URL, params={"cveId": cve_id}, timeout=30)
                if resp.status_code == 429:
                    pause = max(float(resp.headers.get("Retry-After", 6)), 1.0)
                    logger.info("NVD throttled the request, retrying in %.0fs", pause)
                    time.sleep(pause)
                    continue
                resp.raise_for_status()
                return resp.json()
            except requests.RequestException:
                if attempt == _ATTEMPTS:
                    raise
                time.sleep(2 ** (attempt - 1))
        return {}

    def lookup_cve(self, cve_id: str) -> Optional[CVERecord]:
        """
        Return the NVD record for cve_id, or None if NVD has none or is unreachable.

        Network failures are logged and reported as None so callers can fall
        back to approximate scores. They are not cached.
        """
        cve_id = cve_id.upper()
        if self.cache is not None and self.cache.contains(cve_id):
            return self.cache.get(cve_id)

        try:
            payload = self._fetch(cve_id)
        except requests.RequestException as exc:
            logger.warning("NVD lookup for %s failed: %s", cve_id, exc)
            return None

        records = (parse_cve_item(item) for item in payload.get("vulnerabilities", []))
        record = next((r for r in records if r is not None), None)
        if self.cache is not None:
            self.cache.set(cve_id, record)
        return record
