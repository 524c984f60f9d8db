"""Bron backend: run execution and event-sourcing engine."""

__version__ = "0.1.0"
