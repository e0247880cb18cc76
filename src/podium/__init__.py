"""Podium — round finalization and settlement engine."""

__version__ = "0.4.0"
