"""Error taxonomy for node-dns.

Errors raised at the API boundaries (DNS provider, Kubernetes) are caught by
the reconciler and mapped to an ``ErrorClass`` that drives the retry policy.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

import requests
from kubernetes.client.exceptions import ApiException


class ErrorClass(Enum):
    """How a failed reconciliation should be treated.

    TRANSIENT: Retried with exponential backoff, never surfaced as fatal.
    BENIGN:    Expected condition; wait for the next watch event.
    FATAL:     Configuration problem; retried a bounded number of times
               with escalating log severity.
    """

    TRANSIENT = "transient"
    BENIGN = "benign"
    FATAL = "fatal"


class NodeDNSError(Exception):
    """Base class for all node-dns errors."""


# =============================================================================
# DNS Provider Errors
# =============================================================================


class ProviderError(NodeDNSError):
    """Unexpected response from the DNS provider."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx from the DNS provider."""


class ProviderRateLimited(ProviderError):
    """The DNS provider asked us to slow down."""

    def __init__(self, message: str, retry_after: float, status: Optional[int] = 429):
        super().__init__(message, status)
        self.retry_after = retry_after


class ProviderAuthError(ProviderError):
    """The API credential was rejected (401/403)."""


class ProviderNotFound(ProviderError):
    """The configured domain does not exist at the provider."""


class ProviderConflict(ProviderError):
    """The record was deleted concurrently; the caller should create it."""


# =============================================================================
# Node Errors
# =============================================================================


class NoAddressAvailable(NodeDNSError):
    """The node does not carry a usable address yet."""


class FinalizerConflict(NodeDNSError):
    """The node kept changing under us while patching its finalizers."""


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception raised during reconciliation to an ErrorClass."""
    if isinstance(error, NoAddressAvailable):
        return ErrorClass.BENIGN
    if isinstance(error, (ProviderAuthError, ProviderNotFound)):
        return ErrorClass.FATAL
    if isinstance(error, ApiException) and error.status in (401, 403):
        return ErrorClass.FATAL
    if isinstance(error, (ProviderError, FinalizerConflict, ApiException)):
        return ErrorClass.TRANSIENT
    if isinstance(error, requests.exceptions.RequestException):
        return ErrorClass.TRANSIENT
    # Anything else is a bug; keep retrying with backoff so it stays visible.
    return ErrorClass.TRANSIENT
