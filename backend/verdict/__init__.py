"""Verdict: outcome resolution and creator scoring service."""

__version__ = "1.0.0"
