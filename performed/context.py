"""
Process-wide state shared by every `perform()` call.

Throttle buckets, cached OAuth tokens and the last exchange live on a single
`Context`. The default context is created on first use; tests can install
their own with `set_context()` or wipe the shared state with `reset_context()`.
"""

import threading
import time
from typing import Callable, Optional, Tuple

from .adapter import RequestsTransport, Transport
from .model import Request, Response
from .oauth import TokenCache
from .throttle import ThrottleRegistry


class LastExchange:
    """
    The most recent request and its response, for diagnostics only.
    """

    def __init__(self) -> None:
        self.__lock = threading.Lock()
        self.__request = None  # type: Optional[Request]
        self.__response = None  # type: Optional[Response]

    def record(self, request: Request, response: Optional[Response]) -> None:
        with self.__lock:
            self.__request = request
            self.__response = response

    def get(self) -> Tuple[Optional[Request], Optional[Response]]:
        with self.__lock:
            return self.__request, self.__response

    def clear(self) -> None:
        self.record(None, None)


class Context:
    """
    @param transport
      Sends requests. Defaults to a `RequestsTransport`, created on first use.
    @param clock
      Monotonic clock used for throttling and retry deadlines.
    @param wall_clock
      UNIX time, used for cache freshness and token expiry.
    @param sleep
      Blocks the calling thread; used by throttling and retry backoff.
    """

    def __init__(self, transport: Optional[Transport] = None, clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep) -> None:
        self.__transport = transport
        self.__transport_lock = threading.Lock()
        self.clock = clock
        self.wall_clock = wall_clock
        self.sleep = sleep
        self.throttles = ThrottleRegistry(clock, sleep)
        self.tokens = TokenCache()
        self.last = LastExchange()

    @property
    def transport(self) -> Transport:
        with self.__transport_lock:
            if self.__transport is None:
                self.__transport = RequestsTransport()
            return self.__transport

    def reset(self) -> None:
        self.throttles.reset()
        self.tokens.clear()
        self.last.clear()

    def close(self) -> None:
        with self.__transport_lock:
            if self.__transport is not None:
                self.__transport.close()


_context = None  # type: Optional[Context]
_context_lock = threading.Lock()


def get_context() -> Context:
    global _context
    with _context_lock:
        if _context is None:
            _context = Context()
        return _context


def set_context(context: Optional[Context]) -> None:
    global _context
    with _context_lock:
        _context = context


def reset_context() -> None:
    get_context().reset()
