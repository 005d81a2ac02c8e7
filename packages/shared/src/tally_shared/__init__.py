"""Tally Shared - Common schemas for Tally services."""

from tally_shared.schemas import ClickEvent

__all__ = ["ClickEvent"]
