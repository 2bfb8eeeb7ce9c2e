"""Queue-driven dispatcher for external CLI agent tasks."""

__version__ = "0.1.0"
