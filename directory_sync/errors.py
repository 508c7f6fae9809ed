"""
Exception hierarchy for directory synchronization.

Record-level failures are recovered inside a run and reported as Error results.
Run-level failures escalate to the caller after the run summary is stamped Failed.
"""

from typing import Optional


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class RecordError(SyncError):
    """A single record could not be looked up, mapped or written."""
    pass


class RunError(SyncError):
    """
    The whole run cannot proceed.

    The summary of the failed run is attached as ``summary`` once the run has
    been stamped Failed, so callers can still report partial totals.
    """

    fallback_to_full = False

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
        self.summary = None


class DirectoryUnavailableError(RunError):
    """Directory could not be reached or refused the query."""
    pass


class StoreUnavailableError(RunError):
    """Target record store could not be read."""
    pass


class DeltaQueryError(RunError):
    """Change-feed query failed; a full sync should be considered instead."""

    fallback_to_full = True
