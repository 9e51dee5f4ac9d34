"""
Outcome classification and retry control for a single `perform()` call.

The retry loop itself is a `tenacity.Retrying` controller: this module supplies
the retry predicate, the wait strategy (backoff, overridden by `Retry-After`),
and the stop condition, all driven by the request's `RetryConfig`.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Callable, List, Optional

from tenacity import RetryCallState, Retrying
from tenacity.retry import retry_base
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from .errors import TransportFailure
from .model import Request, Response
from .options import NO_RETRY, RetryConfig
from .util import parse_delay


logger = logging.getLogger(__name__)


class Outcome(Enum):
    SUCCESS = 'success'
    RETRY = 'retry'
    FAILURE = 'failure'


def config_of(request: Request) -> RetryConfig:
    return request.retry or NO_RETRY


def classify(request: Request, response: Optional[Response] = None,
             error: Optional[BaseException] = None) -> Outcome:
    """
    Classify the outcome of one attempt.

    Transport failures are retried unless the retry config marks them fatal.
    HTTP errors are retried only when transient; any other error status gets a
    single attempt no matter how many tries are configured.
    """
    config = config_of(request)
    if error is not None:
        if isinstance(error, TransportFailure) and not config.is_fatal(error):
            return Outcome.RETRY
        return Outcome.FAILURE
    if not request.error.is_error(response):
        return Outcome.SUCCESS
    if config.is_transient(response):
        return Outcome.RETRY
    return Outcome.FAILURE


def retry_after(request: Request, response: Response, now: Optional[float] = None) -> Optional[float]:
    """
    The delay the server asked for, if any.
    """
    config = config_of(request)
    if config.after is not None:
        return config.after(response)
    return parse_delay(response.headers.get('Retry-After'), time.time() if now is None else now)


@dataclass
class RetryState:
    """
    Bookkeeping for one logical `perform()` call.
    """

    attempts: int = 0
    waits: List[float] = field(default_factory=list)
    terminal: bool = False
    reauthenticated: bool = False
    """
    Set once the access token has been replaced after an `invalid_token` 401.
    """

    last_response: Optional[Response] = None
    last_error: Optional[BaseException] = None

    def record(self, response: Optional[Response] = None, error: Optional[BaseException] = None) -> None:
        self.attempts += 1
        self.last_response = response
        self.last_error = error


class retry_on_outcome(retry_base):
    def __init__(self, request: Request) -> None:
        self.__request = request

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome.failed:
            return classify(self.__request, error=outcome.exception()) is Outcome.RETRY
        return classify(self.__request, response=outcome.result()) is Outcome.RETRY


class stop_when_exhausted(stop_base):
    """
    Stops once the attempts recorded in `state` reach `max_tries`, or the
    elapsed time reaches `max_seconds`.
    """

    def __init__(self, config: RetryConfig, state: RetryState, clock: Callable[[], float]) -> None:
        self.__config = config
        self.__state = state
        self.__clock = clock
        self.__started = clock()

    def remaining(self) -> Optional[float]:
        if self.__config.max_seconds is None:
            return None
        return self.__config.max_seconds - (self.__clock() - self.__started)

    def __call__(self, retry_state: RetryCallState) -> bool:
        if self.__state.attempts >= self.__config.max_tries:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class wait_backoff(wait_base):
    """
    Waits as long as `Retry-After` asks, falling back to the configured backoff
    function of the attempt number. Never waits past `max_seconds`.
    """

    def __init__(self, request: Request, state: RetryState, stop: stop_when_exhausted,
                 wall_clock: Callable[[], float] = time.time) -> None:
        self.__request = request
        self.__state = state
        self.__stop = stop
        self.__wall_clock = wall_clock

    def __call__(self, retry_state: RetryCallState) -> float:
        config = config_of(self.__request)
        delay = None
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            delay = retry_after(self.__request, outcome.result(), self.__wall_clock())
        if delay is None:
            delay = config.backoff(self.__state.attempts)
        delay = max(0.0, float(delay))
        remaining = self.__stop.remaining()
        if remaining is not None:
            delay = max(0.0, min(delay, remaining))
        return delay


def build_retrying(request: Request, state: RetryState, clock: Callable[[], float],
                   sleep: Callable[[float], None], wall_clock: Callable[[], float] = time.time) -> Retrying:
    config = config_of(request)
    stop = stop_when_exhausted(config, state, clock)

    def before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        state.waits.append(delay)
        outcome = retry_state.outcome
        if outcome.failed:
            logger.info('Retrying {} {} after {} (attempt {}/{}, waiting {:.2f}s)'.format(
                request.effective_method, request.url.build(), outcome.exception(),
                state.attempts, config.max_tries, delay))
            return
        response = outcome.result()
        logger.info('Retrying {} {} after HTTP {} (attempt {}/{}, waiting {:.2f}s)'.format(
            request.effective_method, request.url.build(), response.status,
            state.attempts, config.max_tries, delay))
        response.close()

    def on_exhausted(retry_state: RetryCallState) -> Response:
        state.terminal = True
        logger.warning('Giving up on {} {} after {} attempts'.format(
            request.effective_method, request.url.build(), state.attempts))
        return retry_state.outcome.result()

    return Retrying(retry=retry_on_outcome(request),
                    stop=stop,
                    wait=wait_backoff(request, state, stop, wall_clock),
                    sleep=sleep,
                    before_sleep=before_sleep,
                    retry_error_callback=on_exhausted,
                    reraise=True)
