"""Utility helpers for drillbook."""

from .retry import compute_backoff, next_attempt_at

__all__ = ["compute_backoff", "next_attempt_at"]
