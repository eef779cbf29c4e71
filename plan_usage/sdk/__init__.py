"""
SDK for Plan Usage.

Provides programmatic access to quota enforcement and usage tracking.
"""

from .client import PlanUsage

__all__ = ["PlanUsage"]
