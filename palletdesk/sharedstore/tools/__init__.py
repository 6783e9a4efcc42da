"""
Administrative tools for the shared store.

This module provides:
- palletdesk-store: inspect, validate, import into and export a shared directory
"""

from .cli import main

__all__ = ["main"]
