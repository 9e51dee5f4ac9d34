"""Token buckets shared by every request in a realm."""

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Dict, Optional

from .model import Request


logger = logging.getLogger(__name__)

TimeFunc = Callable[[], float]
SleepFunc = Callable[[float], None]


@dataclass(frozen=True)
class BucketStatus:
    realm: str
    rate: float
    capacity: float
    tokens: float


class TokenBucket:
    """
    A token bucket that may go into debt.

    A caller that finds the bucket empty reserves the next token, which drives
    the token count below zero, and is told how long to wait for it. Callers
    arriving later queue up behind it, so concurrent callers are never
    admitted faster than `rate`.
    """

    def __init__(self, rate: float, capacity: float, time_func: TimeFunc = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError('Token bucket rate must be positive.')
        if capacity < 1:
            raise ValueError('Token bucket capacity must be at least one token.')
        self.__rate = float(rate)
        self.__capacity = float(capacity)
        self.__time_func = time_func
        self.__tokens = float(capacity)
        self.__timestamp = time_func()
        self.__lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self.__rate

    @property
    def capacity(self) -> float:
        return self.__capacity

    def reconfigure(self, rate: float, capacity: float) -> None:
        with self.__lock:
            self._refill()
            self.__rate = float(rate)
            self.__capacity = float(capacity)
            self.__tokens = min(self.__tokens, self.__capacity)

    def _refill(self) -> None:
        now = self.__time_func()
        elapsed = max(0.0, now - self.__timestamp)
        self.__timestamp = now
        self.__tokens = min(self.__capacity, self.__tokens + elapsed * self.__rate)

    def reserve(self) -> float:
        """
        Take one token.

        @return
          Seconds the caller must wait before the token is really available.
        """
        with self.__lock:
            self._refill()
            self.__tokens -= 1.0
            if self.__tokens >= 0:
                return 0.0
            return -self.__tokens / self.__rate

    @property
    def tokens_available(self) -> float:
        with self.__lock:
            self._refill()
            return self.__tokens


class ThrottleRegistry:
    """
    Process-wide token buckets, keyed by realm.

    Buckets are created on first use and live until `reset()`.
    """

    def __init__(self, time_func: TimeFunc = time.monotonic, sleep_func: SleepFunc = time.sleep) -> None:
        self.__time_func = time_func
        self.__sleep_func = sleep_func
        self.__buckets = {}  # type: Dict[str, TokenBucket]
        self.__lock = threading.Lock()

    def bucket(self, realm: str, rate: float, capacity: float = 1.0) -> TokenBucket:
        with self.__lock:
            bucket = self.__buckets.get(realm)
            if bucket is None:
                logger.info('Creating throttle bucket for realm {} ({} tokens/s, capacity {})'.format(
                    realm, rate, capacity))
                bucket = TokenBucket(rate, capacity, self.__time_func)
                self.__buckets[realm] = bucket
        if bucket.rate != rate or bucket.capacity != capacity:
            bucket.reconfigure(rate, capacity)
        return bucket

    def acquire(self, realm: str, rate: float, capacity: float = 1.0) -> float:
        """
        Wait until a request may start in `realm`.

        Only the calling thread sleeps; other realms are unaffected.

        @return
          The number of seconds waited.
        """
        wait = self.bucket(realm, rate, capacity).reserve()
        if wait > 0:
            logger.info('Throttling realm {}: waiting {:.3f}s'.format(realm, wait))
            self.__sleep_func(wait)
        return wait

    def acquire_for(self, request: Request) -> float:
        config = request.throttle
        if config is None:
            return 0.0
        return self.acquire(realm_of(request), config.rate, config.capacity)

    def status(self) -> Dict[str, BucketStatus]:
        with self.__lock:
            buckets = dict(self.__buckets)
        return {realm: BucketStatus(realm=realm, rate=bucket.rate, capacity=bucket.capacity,
                                    tokens=bucket.tokens_available)
                for realm, bucket in buckets.items()}

    def reset(self, realm: Optional[str] = None) -> None:
        with self.__lock:
            if realm is None:
                self.__buckets.clear()
            else:
                self.__buckets.pop(realm, None)


def realm_of(request: Request) -> str:
    if request.throttle is not None and request.throttle.realm is not None:
        return request.throttle.realm
    return request.url.origin
