"""Outbox event-processing engine: at-least-once delivery of side effects over a shared SQLite table."""

__version__ = "0.1.0"
