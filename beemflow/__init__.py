"""Declarative workflow runtime with pause and resume, events and graph export."""

__version__ = "0.1.0"

__all__ = ["context", "engine", "events", "graph", "mcp", "model", "runner"]