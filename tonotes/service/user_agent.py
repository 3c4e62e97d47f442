"""Small rule table for naming sessions by browser, OS, device and location."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import ip_address
from typing import Any, Optional, Sequence, Tuple

import httpx

from tonotes.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_BROWSER = "Unknown Browser"
UNKNOWN_OS = "Unknown OS"
UNKNOWN_LOCATION = "Unknown Location"
LOCAL_NETWORK = "Local Network"
DEFAULT_GEOIP_URL = "https://ipapi.co/{ip}/json/"

# (name, tokens that must appear, tokens that must not); first match wins
_BROWSER_RULES: Sequence[Tuple[str, Tuple[str, ...], Tuple[str, ...]]] = (
    ("Edge", ("Edg",), ()),
    ("Opera", ("OPR/",), ()),
    ("Opera", ("Opera",), ()),
    ("Samsung Browser", ("SamsungBrowser",), ()),
    ("Firefox", ("Firefox",), ()),
    ("Firefox", ("FxiOS",), ()),
    ("Chrome", ("CriOS",), ()),
    ("Chrome", ("Chrome",), ("Chromium",)),
    ("Chromium", ("Chromium",), ()),
    ("Safari", ("Safari",), ()),
    ("Internet Explorer", ("Trident",), ()),
    ("Internet Explorer", ("MSIE",), ()),
)

_OS_RULES: Sequence[Tuple[str, Tuple[str, ...]]] = (
    ("Windows", ("Windows",)),
    ("Android", ("Android",)),
    ("iOS", ("iPhone",)),
    ("iOS", ("iPad",)),
    ("iOS", ("iPod",)),
    ("macOS", ("Macintosh",)),
    ("ChromeOS", ("CrOS",)),
    ("Linux", ("Linux",)),
)


@dataclass(frozen=True)
class DeviceDescription:
    browser: str
    os: str
    device: str

    @property
    def device_info(self) -> str:
        return f"{self.browser} on {self.os} ({self.device})"

    def display_name(self, location: str) -> str:
        return f"{self.browser} on {self.os} ({location or UNKNOWN_LOCATION})"


def _match(user_agent: str, required: Tuple[str, ...], excluded: Tuple[str, ...] = ()) -> bool:
    return all(tok in user_agent for tok in required) and not any(
        tok in user_agent for tok in excluded
    )


def _device_class(user_agent: str) -> str:
    if "iPhone" in user_agent:
        return "iPhone"
    if "iPad" in user_agent or "Tablet" in user_agent:
        return "Tablet"
    if "Android" in user_agent and "Mobile" not in user_agent:
        return "Tablet"
    if "Mobile" in user_agent or "Android" in user_agent:
        return "Mobile"
    return "Desktop"


def parse_user_agent(user_agent: Optional[str]) -> DeviceDescription:
    """Classify a User-Agent header; unknown parts fall back to fixed labels."""
    ua = (user_agent or "").strip()
    if not ua:
        return DeviceDescription(UNKNOWN_BROWSER, UNKNOWN_OS, "Desktop")
    browser = next(
        (name for name, req, excl in _BROWSER_RULES if _match(ua, req, excl)),
        UNKNOWN_BROWSER,
    )
    os_name = next((name for name, req in _OS_RULES if _match(ua, req)), UNKNOWN_OS)
    return DeviceDescription(browser, os_name, _device_class(ua))


def resolve_location(ip: Optional[str]) -> str:
    """Coarse location label; private and loopback addresses are the local network."""
    if not ip:
        return UNKNOWN_LOCATION
    try:
        addr = ip_address(ip.strip())
    except ValueError:
        return UNKNOWN_LOCATION
    if addr.is_loopback or addr.is_private or addr.is_link_local:
        return LOCAL_NETWORK
    return UNKNOWN_LOCATION


def _public_address(ip: Optional[str]) -> Optional[str]:
    """Normalized address when it is public, else None."""
    if not ip:
        return None
    try:
        addr = ip_address(ip.strip())
    except ValueError:
        return None
    if addr.is_loopback or addr.is_private or addr.is_link_local:
        return None
    return str(addr)


def format_geoip(payload: Any) -> str:
    """Prefer city and country, then country alone, else the unknown label."""
    if not isinstance(payload, dict):
        return UNKNOWN_LOCATION
    city = str(payload.get("city") or "").strip()
    country = str(payload.get("country_name") or payload.get("country") or "").strip()
    if city and country:
        return f"{city}, {country}"
    return country or UNKNOWN_LOCATION


class LocationResolver:
    """Session location from the client IP, optionally via a GeoIP HTTP service.

    Private addresses never leave the process. Lookup failures of any kind
    resolve to "Unknown Location".
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        url_template: str = DEFAULT_GEOIP_URL,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.enabled = enabled
        self.url_template = url_template
        self.timeout = timeout
        self.transport = transport

    async def resolve(self, ip: Optional[str]) -> str:
        local = resolve_location(ip)
        public = _public_address(ip)
        if public is None or not self.enabled:
            return local
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.get(
                    self.url_template.format(ip=public),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geoip_lookup_failed", error_type=type(exc).__name__)
            return UNKNOWN_LOCATION
        return format_geoip(payload)
