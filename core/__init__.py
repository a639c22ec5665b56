"""
Core shared utilities for the lab server.

This module consolidates functionality used by:
- lab_server.py (entry point)
- server/ (Flask API)
"""

from .timestamps import now, isonow, to_iso, parse_timestamp

__all__ = [
    "now",
    "isonow",
    "to_iso",
    "parse_timestamp",
]
