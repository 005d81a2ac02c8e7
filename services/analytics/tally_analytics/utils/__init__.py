"""Click metadata helpers."""

from tally_analytics.utils.referrers import categorize_referrer, extract_referrer_domain
from tally_analytics.utils.urls import (
    extract_tracking_params,
    hash_ip_address,
    strip_sensitive_params,
)
from tally_analytics.utils.user_agents import UserAgentInfo, is_bot, parse_user_agent

__all__ = [
    "categorize_referrer",
    "extract_referrer_domain",
    "extract_tracking_params",
    "hash_ip_address",
    "strip_sensitive_params",
    "UserAgentInfo",
    "is_bot",
    "parse_user_agent",
]
