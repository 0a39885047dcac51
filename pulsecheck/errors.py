"""Typed failures raised at the store boundary and mapped to HTTP codes by the API."""

from __future__ import annotations


class PulseCheckError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PulseCheckError):
    """Raised when monitor input is malformed (bad URL, bad frequency, ...)."""


class ConflictError(PulseCheckError):
    """Raised when a uniqueness constraint (owner + URL) is violated."""


class NotFoundError(PulseCheckError):
    """Raised when an id does not resolve to a row."""


class UnexpectedError(PulseCheckError):
    """Raised when the storage layer fails for reasons the caller cannot fix."""
