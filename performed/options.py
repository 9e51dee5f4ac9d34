"""
Policy options attached to a request.

Each option is a frozen value; predicates and backoff functions are plain
callables so that callers can swap them per request.
"""

from dataclasses import dataclass
from pathlib import Path
import random
from typing import TYPE_CHECKING, Callable, Optional, Tuple

if TYPE_CHECKING:
    from .model import Response


DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_CAP = 60.0
DEFAULT_MAX_TRIES = 3


def is_error_status(response: 'Response') -> bool:
    return response.status >= 400


def is_transient_status(response: 'Response') -> bool:
    return response.status == 429 or 500 <= response.status < 600


def never(error: Exception) -> bool:
    return False


def full_jitter(attempt: int, base: float = DEFAULT_BACKOFF_BASE, cap: float = DEFAULT_BACKOFF_CAP) -> float:
    """
    Exponential backoff with full jitter: a uniform draw from
    `[0, min(cap, base * 2 ** attempt)]`.
    """
    return random.uniform(0, min(cap, base * 2 ** attempt))


@dataclass(frozen=True)
class ErrorConfig:
    is_error: Callable[['Response'], bool] = is_error_status
    """
    Decides whether a response is an HTTP error.
    """

    body: Optional[Callable[['Response'], Optional[str]]] = None
    """
    Extracts extra detail from an error response for the error message.
    """


@dataclass(frozen=True)
class RetryConfig:
    max_tries: int = DEFAULT_MAX_TRIES
    max_seconds: Optional[float] = None
    is_transient: Callable[['Response'], bool] = is_transient_status
    is_fatal: Callable[[Exception], bool] = never
    backoff: Callable[[int], float] = full_jitter
    after: Optional[Callable[['Response'], Optional[float]]] = None
    """
    Extracts the server-requested delay from a response. When unset, the
    `Retry-After` header is used.
    """


@dataclass(frozen=True)
class ThrottleConfig:
    rate: float
    """
    Tokens added to the bucket per second.
    """

    capacity: float = 1.0
    realm: Optional[str] = None
    """
    Name of the shared budget. Defaults to the request's origin.
    """


@dataclass(frozen=True)
class CacheConfig:
    path: Path
    vary: Tuple[str, ...] = ()
    """
    Request headers that take part in the cache fingerprint.
    """

    levels: int = 2


NO_RETRY = RetryConfig(max_tries=1)
