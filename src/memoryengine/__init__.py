"""Semantic memory engine for conversational assistants."""

__version__ = "0.4.0"
