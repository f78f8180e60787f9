"""Exceptions raised by the offline sync layer."""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for offline sync operations."""


class StorageUnavailable(SyncError):
    """The local durable store cannot be opened or used."""


class NetworkUnavailable(SyncError):
    """No connectivity: the remote API could not be reached."""


class RemoteRejected(SyncError):
    """The remote API answered with a non-success status."""

    def __init__(self, status_code: Optional[int], reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        message = f"HTTP {status_code}" if status_code is not None else "No response"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ItemNotFound(SyncError):
    """No queued item with the given key exists in the queue."""

    def __init__(self, queue_name: str, key: str):
        self.queue_name = queue_name
        self.key = key
        super().__init__(f"{key} not found in {queue_name}")


__all__ = [
    "ItemNotFound",
    "NetworkUnavailable",
    "RemoteRejected",
    "StorageUnavailable",
    "SyncError",
]
