"""Typed failures raised by the Engram memory engine.

Every user-visible operation either returns a (possibly degraded) result or
raises one of these errors.
"""

from __future__ import annotations


class EngramError(Exception):
    """Base class for all engine errors."""


class InvalidRecord(EngramError, ValueError):
    """A memory record or mutation was rejected at the store boundary.

    Not retryable: the caller has to fix its input.
    """


class EmbeddingUnavailable(EngramError):
    """The external embedding service failed, timed out or returned garbage.

    Retrieval turns this into a degraded keyword search; creation surfaces it.
    """


class StoreUnavailable(EngramError):
    """The persistent store could not complete an operation.

    Retryable at the caller's discretion.
    """
