#!/usr/bin/env python3
"""
Exception types raised by the secref package.
"""

from typing import Optional


class SecRefError(Exception):
    """Base class for all secref errors."""


class SECFetchError(SecRefError):
    """Raised when a request to SEC EDGAR fails after retries."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class SECRateLimitError(SECFetchError):
    """Raised when SEC keeps throttling us past the retry ceiling."""

    def __init__(self, message: str, retry_after: Optional[float] = None, url: Optional[str] = None):
        super().__init__(message, status=429, url=url)
        self.retry_after = retry_after


class MappingServiceError(SecRefError):
    """Raised for a failed OpenFIGI batch request."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class PayloadTooLargeError(MappingServiceError):
    """OpenFIGI rejected the request body (HTTP 413); the batch size is misconfigured."""

    def __init__(self, message: str):
        super().__init__(message, status=413, retryable=False)


class RateLimitTimeoutError(SecRefError):
    """Raised when waiting for a rate limiter slot would exceed the allowed wait."""


class SyncError(SecRefError):
    """Raised when a sync source cannot complete."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class StorageError(SecRefError):
    """Raised when the storage sink rejects a write."""
