"""Streaming relay between requirement-engineering endpoints and model providers."""

__version__ = "0.1.0"
