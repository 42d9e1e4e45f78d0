"""
Exception classes for the broadcast scheduler.

Per-channel failures (any LiveBroadcastError other than SchedulerFatal) are isolated
and logged by the caller; structural failures (SchedulerFatal) abort the running tick.
"""

from typing import Optional


class LiveBroadcastError(Exception):
    """Base exception for all scheduler errors"""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class SchedulerFatal(LiveBroadcastError):
    """Raised when a tick cannot run at all, e.g. the environment is unknown
    or the process table cannot be read"""


class ProcessOutputError(LiveBroadcastError):
    """Raised when a remote call for a single output channel fails"""

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None):
        details = {"status_code": status_code} if status_code else {}
        super().__init__(message, details)
        self.retryable = retryable
        self.status_code = status_code


class InvalidExternalReference(LiveBroadcastError):
    """Raised when a lookup by external platform id returns nothing"""

    def __init__(self, external_id: str, message: Optional[str] = None):
        super().__init__(message or f"No broadcast found for external id: {external_id}",
                         {"external_id": external_id})
        self.external_id = external_id


class StoreError(LiveBroadcastError):
    """Raised when the persistence layer fails"""

    def __init__(self, operation: str, message: str):
        super().__init__(message, {"operation": operation})
        self.operation = operation
