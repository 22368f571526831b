"""Exception hierarchy for the receivables reconciliation engine.

Cycle-level failures (``ConfigurationError``, ``UpstreamError``,
``SyncTimeoutError``) abort a sync run. Record-level failures
(``NormalizationError``, ``RenumberError``) are collected into the run
summary and the run continues.
"""

from __future__ import annotations


class ReceivablesError(Exception):
    """Base class for all reconciliation engine errors."""


class ConfigurationError(ReceivablesError):
    """Raised when upstream credentials or settings are missing."""


class UpstreamError(ReceivablesError):
    """Raised when the upstream accounting API cannot serve a request."""


class NormalizationError(ReceivablesError):
    """Raised when an upstream record has an unusable shape."""


class RenumberError(ReceivablesError):
    """Raised when the atomic customer renumbering could not be committed."""


class DuplicateError(ReceivablesError):
    """Raised when a unique manual mapping or exception already exists."""


class NotFoundError(ReceivablesError):
    """Raised when a referenced row does not exist."""


class SyncAlreadyRunningError(ReceivablesError):
    """Raised when a sync cycle is triggered while another one is in flight."""


class SyncTimeoutError(ReceivablesError):
    """Raised when a sync cycle exceeds its deadline."""
