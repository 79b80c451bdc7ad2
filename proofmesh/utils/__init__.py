"""Utility helpers for proofmesh."""

from .clock import new_id, utcnow
from .retry import compute_backoff, schedule_retry
from .template import render_template

__all__ = ["compute_backoff", "new_id", "render_template", "schedule_retry", "utcnow"]
