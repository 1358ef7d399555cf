"""Cadence — rule-based automation core for tasks, journal and exercise tracking."""

__version__ = "0.1.0"
