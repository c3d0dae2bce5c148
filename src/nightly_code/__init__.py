"""Unattended, time-boxed coding sessions driven by CLI agents."""

__version__ = "0.1.0"
