"""Telemetry store access: the write path and the SQL query client."""
