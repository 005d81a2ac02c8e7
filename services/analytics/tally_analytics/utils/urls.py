"""URL helpers used before click data leaves the service."""

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

SENSITIVE_QUERY_KEYS = frozenset({"password", "token", "key", "secret", "auth", "access_token"})

TRACKING_QUERY_KEYS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "gclid",
    "fbclid",
    "msclkid",
    "ttclid",
    "li_fat_id",
    "twclid",
    "custom_param1",
    "custom_param2",
    "custom_param3",
)


def strip_sensitive_params(url: str | None) -> str:
    """Remove credential-like query parameters from a URL.

    Keys are matched exactly. A URL without sensitive keys, or one that
    cannot be parsed, is returned unchanged.
    """
    if not url:
        return ""

    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    if not parts.query:
        return url

    params = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(key, value) for key, value in params if key not in SENSITIVE_QUERY_KEYS]
    if len(kept) == len(params):
        return url

    return urlunsplit(parts._replace(query=urlencode(kept)))


def extract_tracking_params(url: str | None) -> dict[str, str]:
    """Return the non-empty UTM, click-id and custom parameters found in a URL."""
    if not url:
        return {}

    try:
        query = urlsplit(url).query
    except ValueError:
        return {}

    found: dict[str, str] = {}
    for key, value in parse_qsl(query):
        if key in TRACKING_QUERY_KEYS and value and key not in found:
            found[key] = value
    return found


def hash_ip_address(ip_address: str, salt: str = "") -> str:
    """Return a short, salted SHA-256 digest of an IP address."""
    digest = hashlib.sha256(f"{salt}{ip_address}".encode("utf-8")).hexdigest()
    return digest[:16]
