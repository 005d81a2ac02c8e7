"""Referrer normalization and categorization."""

from typing import Literal
from urllib.parse import urlsplit

ReferrerCategory = Literal["social", "search", "direct", "other"]

DIRECT = "direct"
UNKNOWN = "unknown"

SOCIAL_DOMAINS = (
    "facebook.com",
    "fb.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "pinterest.com",
    "reddit.com",
    "tiktok.com",
    "youtube.com",
    "snapchat.com",
    "whatsapp.com",
)

SEARCH_DOMAINS = (
    "google.com",
    "bing.com",
    "yahoo.com",
    "duckduckgo.com",
    "baidu.com",
    "yandex.com",
    "ask.com",
)


def extract_referrer_domain(referrer: str | None) -> str:
    """Reduce a raw Referer header to a bare host name.

    Returns ``"direct"`` for an empty referrer and ``"unknown"`` when the
    value is not an absolute URL. A leading ``www.`` is stripped.
    """
    if not referrer or not referrer.strip():
        return DIRECT

    try:
        parts = urlsplit(referrer.strip())
        hostname = parts.hostname
    except ValueError:
        return UNKNOWN

    if not parts.scheme or not hostname:
        return UNKNOWN

    hostname = hostname.lower()
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


def categorize_referrer(referrer_domain: str) -> ReferrerCategory:
    """Bucket a normalized referrer domain into social, search, direct or other.

    Matching is by substring so that regional hosts such as ``m.facebook.com``
    or ``google.com.au`` land in the right bucket.
    """
    if referrer_domain == DIRECT:
        return "direct"
    if any(domain in referrer_domain for domain in SOCIAL_DOMAINS):
        return "social"
    if any(domain in referrer_domain for domain in SEARCH_DOMAINS):
        return "search"
    return "other"
