"""Gated software-delivery workflow engine."""

__version__ = "0.3.0"
