"""User-agent classification.

Bot detection combines the ``crawlerdetect`` signature database with a short
list of link previewers and uptime monitors it does not flag. Device, browser
and OS come from ``ua_parser`` and are normalized to lowercase labels so that
mobile and desktop variants of a browser group together in reports.
"""

import re
from typing import NamedTuple

from crawlerdetect import CrawlerDetect
from ua_parser import parse

_crawler_detect = CrawlerDetect()

# Previewers and monitors that identify themselves without a crawler signature
EXTRA_BOT_PATTERN = re.compile(
    r"whatsapp|telegrambot|discordbot|skypeuripreview|uptime|monitor|pingdom|headlesschrome",
    re.IGNORECASE,
)

_BROWSER_FAMILIES = {
    "Chrome Mobile": "chrome",
    "Chrome Mobile iOS": "chrome",
    "Chrome Mobile WebView": "chrome",
    "Mobile Safari": "safari",
    "Mobile Safari UI/WKWebView": "safari",
    "Firefox Mobile": "firefox",
    "Firefox iOS": "firefox",
    "Edge Mobile": "edge",
    "Opera Mobile": "opera",
    "Samsung Internet": "samsung",
}

_OS_FAMILIES = {
    "Mac OS X": "macos",
    "iOS": "ios",
    "Android": "android",
    "Windows": "windows",
    "Chrome OS": "chromeos",
    "Linux": "linux",
    "Ubuntu": "linux",
    "Fedora": "linux",
}

_MOBILE_OS = {"ios", "android"}


class UserAgentInfo(NamedTuple):
    device_type: str
    browser: str
    os: str


def is_bot(user_agent: str | None) -> bool:
    """Return True if the user agent belongs to a crawler, previewer or monitor."""
    if not user_agent:
        return False
    if _crawler_detect.isCrawler(user_agent):
        return True
    return EXTRA_BOT_PATTERN.search(user_agent) is not None


def _family(component) -> str | None:
    family = getattr(component, "family", None)
    if not family or family == "Other":
        return None
    return family


def _device_type(user_agent: str, os_name: str, device_family: str | None) -> str:
    if device_family and ("iPad" in device_family or "Tablet" in device_family):
        return "tablet"
    if os_name in _MOBILE_OS:
        # Android tablets omit the "Mobile" token
        if os_name == "android" and "Mobile" not in user_agent:
            return "tablet"
        return "mobile"
    return "desktop"


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """Derive device type, browser and OS labels from a User-Agent header.

    Unrecognized components are reported as ``unknown``; a missing header is
    treated as an unknown desktop client.
    """
    if not user_agent:
        return UserAgentInfo(device_type="desktop", browser="unknown", os="unknown")

    result = parse(user_agent)

    browser_family = _family(result.user_agent)
    browser = _BROWSER_FAMILIES.get(browser_family, browser_family.lower()) if browser_family else "unknown"

    os_family = _family(result.os)
    os_name = _OS_FAMILIES.get(os_family, os_family.lower()) if os_family else "unknown"

    device_type = _device_type(user_agent, os_name, _family(result.device))

    return UserAgentInfo(device_type=device_type, browser=browser, os=os_name)
