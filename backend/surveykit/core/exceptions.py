"""Exceptions raised by the offline data-collection layer."""
from typing import Optional


class LocalStoreError(Exception):
    """The embedded local store could not complete an operation."""


class StorageQuotaExceeded(LocalStoreError):
    """Storing a file would exceed the configured local storage budget."""


class FileTooLarge(LocalStoreError):
    """A single file is larger than the per-file limit."""


class SyncItemError(Exception):
    """Pushing one queued item to the server failed."""


class SyncDeferred(SyncItemError):
    """The item cannot be pushed yet because something it depends on is unsynced."""


class ApiError(SyncItemError):
    """The server API could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
