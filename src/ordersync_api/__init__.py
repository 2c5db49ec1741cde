"""Shared building blocks for the order sync engine."""

__version__ = "1.0.0"
