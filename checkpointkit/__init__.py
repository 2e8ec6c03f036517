"""Asynchronous checkpoint storage for stateful graph workflows: in-memory, SQLite and Redis backends."""

__version__ = "0.1.0"

__all__ = ["base", "memory", "sqlite", "redis_store"]