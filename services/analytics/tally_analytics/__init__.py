"""Tally analytics service: hybrid query routing and aggregation of link clicks."""

__version__ = "0.1.0"
