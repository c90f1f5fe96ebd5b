"""Exception hierarchy and failure classification for ObraCalc."""

from __future__ import annotations

import asyncio
from enum import Enum

import openai


class ErrorKind(str, Enum):
    """Classified cause of an external call failure."""

    RATE_LIMIT = "rate limit"
    NETWORK = "network"
    OTHER = "unknown"


class ObraCalcError(Exception):
    """Base class for all ObraCalc errors."""


class InvalidRangeError(ObraCalcError, IndexError):
    """Requested page index is outside the document."""


class ExtractionError(ObraCalcError):
    """Page extraction failed after all retries."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.OTHER):
        super().__init__(message)
        self.kind = kind


class EmbeddingError(ObraCalcError):
    """Embedding generation failed for a whole batch."""


class DimensionMismatchError(EmbeddingError):
    """Embedding service returned vectors of the wrong dimensionality."""

    def __init__(self, expected: int, actual: int, index: int | None = None):
        where = f" at position {index}" if index is not None else ""
        super().__init__(
            f"Embedding dimension mismatch{where}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
        self.index = index


class CircuitBreakerOpenError(ObraCalcError):
    """Too many consecutive batch failures; ingestion aborted."""


class GenerationError(ObraCalcError):
    """Model answer could not be parsed into the requested shape."""


class DecompositionError(ObraCalcError):
    """Task decomposition produced no usable subtasks."""


_RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "rate_limit")
_NETWORK_MARKERS = (
    "fetch failed",
    "econnreset",
    "etimedout",
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an exception as rate-limit, network/transient or other."""
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(
        exc,
        (
            openai.APIConnectionError,  # includes APITimeoutError
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
        ),
    ):
        return ErrorKind.NETWORK

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT
    if any(marker in message for marker in _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return ErrorKind.OTHER
