"""Exception types for the Vigor recovery engine.

Numeric / extraction failures never raise: they come back as
``InsufficientData`` values (see ``src.recovery.base``).  The exceptions here
are reserved for boundary validation and for synchronization / transport
failures, which must propagate to the orchestrator and its caller.
"""

from __future__ import annotations


class RecoveryError(Exception):
    """Base class for all recovery engine errors."""


class InvalidRangeError(RecoveryError, ValueError):
    """Raised when a time or date range is empty or reversed (start >= end)."""


class StoreError(RecoveryError):
    """Raised when the metrics store cannot complete a read or write."""


class SyncError(RecoveryError):
    """A synchronization attempt failed.

    Attributes:
        retryable: True if re-running the same sync is expected to succeed
                   once the underlying condition clears.
    """

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ProviderFetchError(SyncError):
    """A data provider could not be reached or returned an unusable response.

    Attributes:
        source: Provider slug that failed (e.g. 'whoop', 'polar').
    """

    retryable = True

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class DeviceBusyError(ProviderFetchError):
    """The device is held by another client (e.g. a live workout session)."""


class SyncTimeoutError(SyncError):
    """The caller-imposed timeout elapsed before the sync completed."""

    retryable = True
