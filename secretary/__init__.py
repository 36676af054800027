"""Secretary: offline-first voice recording processing and sync engine."""

__version__ = "0.1.0"
