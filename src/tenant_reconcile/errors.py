from __future__ import annotations


class ReconcileError(Exception):
    """Base class for errors that abort a reconciliation run."""


class ConfigError(ReconcileError):
    """Raised when the reconciliation configuration is missing or invalid."""
