"""User agent and referrer classification."""

import re
from typing import NamedTuple, Optional
from urllib.parse import urlparse

_MOBILE = re.compile(r"mobile|android|iphone|ipod|blackberry|iemobile|opera mini", re.I)
_TABLET = re.compile(r"ipad|tablet|playbook|silk", re.I)
_BOT = re.compile(r"bot|crawl|spider|slurp|bingpreview|headlesschrome|lighthouse", re.I)

# Order matters: Chromium derivatives before Chrome, Chrome before Safari.
_BROWSERS = [
    (re.compile(r"edg/|edge/", re.I), "Edge"),
    (re.compile(r"opr/|opera", re.I), "Opera"),
    (re.compile(r"brave", re.I), "Brave"),
    (re.compile(r"vivaldi", re.I), "Vivaldi"),
    (re.compile(r"yabrowser", re.I), "Yandex"),
    (re.compile(r"samsungbrowser", re.I), "Samsung Internet"),
    (re.compile(r"ucbrowser", re.I), "UC Browser"),
    (re.compile(r"silk", re.I), "Amazon Silk"),
    (re.compile(r"duckduckgo", re.I), "DuckDuckGo"),
    (re.compile(r"firefox|fxios", re.I), "Firefox"),
    (re.compile(r"chrome|chromium|crios", re.I), "Chrome"),
    (re.compile(r"safari", re.I), "Safari"),
    (re.compile(r"trident|msie", re.I), "IE"),
]

_OPERATING_SYSTEMS = [
    (re.compile(r"iphone|ipad|ipod", re.I), "iOS"),
    (re.compile(r"android", re.I), "Android"),
    (re.compile(r"windows", re.I), "Windows"),
    (re.compile(r"cros", re.I), "Chrome OS"),
    (re.compile(r"mac os x|macintosh", re.I), "macOS"),
    (re.compile(r"linux", re.I), "Linux"),
]

_KNOWN_BRANDS = [
    ("google", "google"),
    ("bing", "bing"),
    ("duckduckgo", "duckduckgo"),
    ("twitter", "twitter"),
    ("facebook", "facebook"),
    ("linkedin", "linkedin"),
    ("github", "github"),
    ("reddit", "reddit"),
]

# Short hosts that would false-match as substrings (reddi"t.co"m).
_KNOWN_HOSTS = {
    "t.co": "twitter",
    "x.com": "twitter",
}


class ParsedUserAgent(NamedTuple):
    device_type: str
    browser: str
    os: str


def parse_user_agent(ua: Optional[str]) -> ParsedUserAgent:
    if not ua or ua == "unknown":
        return ParsedUserAgent("desktop", "Unknown", "Unknown")

    if _TABLET.search(ua):
        device_type = "tablet"
    elif _MOBILE.search(ua):
        device_type = "mobile"
    else:
        device_type = "desktop"

    browser = next((name for pattern, name in _BROWSERS if pattern.search(ua)), "Unknown")
    if browser == "Unknown" and _BOT.search(ua):
        browser = "Bot"
    os_name = next((name for pattern, name in _OPERATING_SYSTEMS if pattern.search(ua)), "Unknown")

    return ParsedUserAgent(device_type, browser, os_name)


def is_bot(ua: Optional[str]) -> bool:
    if not ua:
        return False
    return bool(_BOT.search(ua))


def _normalize_host(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def parse_referrer_source(referrer: Optional[str], site_host: Optional[str] = None) -> str:
    """
    Classify a referrer URL.

    Returns "direct" for no referrer or a self-referral, a well-known source
    name, the bare referrer host, or "unknown" when it cannot be parsed.
    """
    if not referrer:
        return "direct"
    try:
        host = urlparse(referrer).hostname
    except ValueError:
        return "unknown"
    if not host:
        return "unknown"

    host = _normalize_host(host)
    if site_host and host == _normalize_host(site_host):
        return "direct"

    if host in _KNOWN_HOSTS:
        return _KNOWN_HOSTS[host]
    for brand, source in _KNOWN_BRANDS:
        if brand in host:
            return source
    return host
