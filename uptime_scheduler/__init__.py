"""Recurring health-check scheduler with local and distributed execution."""

__version__ = "0.1.0"
