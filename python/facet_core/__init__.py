"""Adaptive orchestration engine for time-boxed conversational analysis."""

__version__ = "0.1.0"
