"""Resumable task continuation engine."""

__version__ = "0.1.0"
