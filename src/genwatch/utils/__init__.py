"""Shared utilities for genwatch."""

from genwatch.utils.time import Clock, format_age, utc_now

__all__ = ["Clock", "format_age", "utc_now"]
