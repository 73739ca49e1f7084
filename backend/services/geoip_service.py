"""
Geo-routing of download links: picks the regional mirror tag for a target IP.
"""

import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from backend.config import config

logger = logging.getLogger(__name__)

AUSTRALIA_CODES = {"AU", "AUS"}

ASIA_CODES = {
    "AF", "AFG", "AM", "ARM", "AZ", "AZE", "BH", "BHR", "BD", "BGD", "BT", "BTN",
    "MM", "MMR", "KH", "KHM", "CN", "CHN", "CY", "CYP", "GE", "GEO", "IN", "IND",
    "ID", "IDN", "IR", "IRN", "IQ", "IRQ", "IL", "ISR", "JP", "JPN", "JO", "JOR",
    "KZ", "KAZ", "KP", "PRK", "KR", "KOR", "KW", "KWT", "KG", "KGZ", "LA", "LAO",
    "LB", "LBN", "MY", "MYS", "MV", "MDV", "MN", "MNG", "NP", "NPL", "OM", "OMN",
    "PK", "PAK", "PH", "PHL", "QA", "QAT", "SA", "SAU", "SG", "SGP", "LK", "LKA",
    "SY", "SYR", "TJ", "TJK", "TH", "THA", "TL", "TLS", "TM", "TKM", "AE", "ARE",
    "UZ", "UZB", "VN", "VNM", "YE", "YEM",
}  # fmt: skip


class GeoIPError(Exception):
    """Exception raised when a country lookup fails."""


def determine_region(country_code: Optional[str]) -> str:
    """Map an ISO country code (alpha-2 or alpha-3) to a mirror region tag."""
    code = (country_code or "").strip().upper()
    if code in AUSTRALIA_CODES:
        return "australia"
    if code in ASIA_CODES:
        return "asia"
    return "global"


class GeoIPService:
    """Resolves the region tag for an IP through an HTTP country lookup."""

    def __init__(self, geoip_config=None, default_region=None):
        self.geoip_config = geoip_config or config.get_geoip_config()
        self.default_region = default_region or config.get_download_config().get(
            "default_region", "global"
        )
        self.enabled = self.geoip_config.get("enabled", False)
        self.url_template = self.geoip_config.get("url", "")
        self.timeout = self.geoip_config.get("timeout", 3)

        # Configure session with retries
        self.session = requests.Session()
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def lookup_country(self, ip: str) -> str:
        """Return the country code for ``ip`` or raise ``GeoIPError``."""
        if not self.url_template:
            raise GeoIPError("GeoIP lookup URL not configured")
        url = self.url_template.format(ip=ip)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GeoIPError(f"GeoIP request failed: {e}") from e

        if response.status_code != 200:
            raise GeoIPError(f"GeoIP lookup returned HTTP {response.status_code}")

        code = response.text.strip()
        if "application/json" in response.headers.get("Content-Type", ""):
            try:
                data = response.json()
            except ValueError as e:
                raise GeoIPError("GeoIP lookup returned invalid JSON") from e
            code = data.get("country_code") or data.get("countryCode") or ""
        if not code or len(code) > 3:
            raise GeoIPError(f"GeoIP lookup returned no country for {ip}")
        return code.upper()

    def resolve_region(self, ip: str) -> str:
        """Region tag for ``ip``; the default region whenever a lookup is not possible."""
        if not self.enabled:
            return self.default_region
        try:
            region = determine_region(self.lookup_country(ip))
        except GeoIPError as e:
            logger.warning("GeoIP lookup failed, using default region: %s", e)
            return self.default_region
        return region
