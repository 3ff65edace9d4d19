"""Incremental document transformation pipeline for context-limited LLMs."""

__version__ = "0.1.0"
