"""Shared utility functions for Castkeeper.

This module provides common utilities used across the codebase:
- time: Epoch and ISO-8601 instant parsing and formatting
"""

from utils.time import (
    parse_epoch_ms, format_iso, epoch_ms_to_iso,
    utc_now_iso, current_year,
)

__all__ = [
    'parse_epoch_ms',
    'format_iso',
    'epoch_ms_to_iso',
    'utc_now_iso',
    'current_year',
]
