"""
The execution pipeline: cache lookup, throttling, authentication, transport
and retries around one logical request.
"""

from dataclasses import dataclass, replace
import logging
from typing import Callable, Dict, Optional

from .cache import Freshness, HttpAwareCache, open_cache
from .context import Context, get_context
from .errors import HttpError, TransportFailure
from .model import DEFAULT_CHUNK_SIZE, Headers, Request, Response
from .oauth import OAuthEngine, TokenExchange, is_invalid_token
from .retry import Outcome, RetryState, build_retrying, classify
from .throttle import BucketStatus


logger = logging.getLogger(__name__)

REDACTED = '<REDACTED>'
REDACTED_HEADERS = ('Authorization', 'Proxy-Authorization')


class Performer:
    def __init__(self, context: Context) -> None:
        self.__context = context
        exchange = TokenExchange(self.execute, context.wall_clock, context.sleep)
        self.__oauth = OAuthEngine(context.tokens, exchange)

    def perform(self, request: Request) -> Response:
        """
        Perform `request`, recording it and its response as the last exchange.
        """
        self.__context.last.record(request, None)
        response = self.execute(request)
        self.__context.last.record(request, response)
        return response

    def execute(self, request: Request) -> Response:
        final = request.finalize()

        cache = None  # type: Optional[HttpAwareCache]
        entry = None
        if final.cache is not None:
            cache = open_cache(final.cache, self.__context.wall_clock)
            lookup = cache.lookup(final)
            if lookup.freshness is Freshness.FRESH:
                logger.info('Serving {} {} from the cache.'.format(final.effective_method, final.url.build()))
                return lookup.entry.response.with_request(final).with_cache_status('hit')
            if lookup.freshness is Freshness.STALE:
                entry = lookup.entry
                final = cache.conditional(final, entry)

        state = RetryState()
        retrying = build_retrying(final, state, self.__context.clock, self.__context.sleep,
                                  self.__context.wall_clock)
        try:
            response = retrying(self._attempt, final, state)
        except TransportFailure as e:
            if entry is not None:
                entry.response.close()
            raise e.with_attempts(state.attempts) from e.cause

        if entry is not None:
            if response.status == 304:
                logger.info('{} {} was not modified. Serving the cached body.'.format(
                    final.effective_method, final.url.build()))
                return cache.revalidated(final, entry, response)
            entry.response.close()

        if classify(final, response) is not Outcome.SUCCESS:
            detail = final.error.body(response) if final.error.body is not None else None
            raise HttpError(response, state.attempts, detail)

        if cache is not None:
            stored = cache.add(final, response)
            if stored is not None:
                response = stored.response
            elif entry is not None:
                # The stale entry no longer describes the resource.
                cache.delete(final)
        return response

    def _attempt(self, request: Request, state: RetryState) -> Response:
        response = self._send(request, state)
        if (request.auth is not None and 'Authorization' not in request.headers
                and not state.reauthenticated and is_invalid_token(response)):
            logger.info('The server rejected the access token for {}. Retrying with a new one.'.format(
                request.url.build()))
            state.reauthenticated = True
            response.close()
            self.__oauth.invalidate(request.auth)
            response = self._send(request, state)
        if classify(request, response) is not Outcome.SUCCESS:
            # Error bodies are read within the attempt so a broken read can be retried.
            try:
                response.content
            except TransportFailure as e:
                state.last_response, state.last_error = None, e
                raise
        return response

    def _send(self, request: Request, state: RetryState) -> Response:
        self.__context.throttles.acquire_for(request)
        authenticated = self.__oauth.authenticate(request)
        try:
            response = self.__context.transport.send(authenticated, request.timeout)
        except TransportFailure as e:
            state.record(error=e)
            raise
        state.record(response=response)
        return response


def perform(request: Request, context: Optional[Context] = None) -> Response:
    """
    Perform `request` and return its response.

    @throws HttpError
      If the final response is an error.
    @throws TransportFailure
      If no response could be obtained.
    @throws AuthError
      If the request needs an OAuth token and none can be obtained.
    """
    return Performer(context or get_context()).perform(request)


def stream(request: Request, callback: Callable[[bytes], Optional[bool]], chunk_size: int = DEFAULT_CHUNK_SIZE,
           context: Optional[Context] = None) -> Response:
    """
    Perform `request` and hand its body to `callback` chunk by chunk. Streaming
    stops early when the callback returns `False`.
    """
    response = perform(request, context)
    try:
        for chunk in response.iter_chunks(chunk_size):
            if callback(chunk) is False:
                break
    finally:
        response.close()
    return response


@dataclass(frozen=True)
class DryRun:
    method: str
    url: str
    path: str
    headers: Headers
    body: Optional[bytes]

    def render(self, preview: int = 1000) -> str:
        lines = ['{} {} HTTP/1.1'.format(self.method, self.path)]
        lines.extend('{}: {}'.format(key, value) for key, value in self.headers.multi_items())
        if self.body:
            lines.append('')
            text = self.body[:preview].decode('utf-8', errors='replace')
            if len(self.body) > preview:
                text = '{}...'.format(text)
            lines.append(text)
        return '\n'.join(lines)


def dry_run(request: Request) -> DryRun:
    """
    Show what would be sent for `request` without touching the network.
    Credentials are redacted.
    """
    final = request.finalize()
    headers = final.headers.set('Host', final.url.netloc(credentials=False))
    for name in REDACTED_HEADERS:
        if name in headers:
            headers = headers.set(name, REDACTED)
    body = final.body_bytes
    if body is not None:
        headers = headers.set('Content-Length', len(body))
    path = final.url.path or '/'
    if final.url.query:
        path = '{}?{}'.format(path, final.url.build().partition('?')[2].partition('#')[0])
    url = replace(final.url, username=None, password=None).build()
    return DryRun(method=final.effective_method, url=url, path=path, headers=headers, body=body)


def last_request(context: Optional[Context] = None) -> Optional[Request]:
    return (context or get_context()).last.get()[0]


def last_response(context: Optional[Context] = None) -> Optional[Response]:
    return (context or get_context()).last.get()[1]


def throttle_status(context: Optional[Context] = None) -> Dict[str, BucketStatus]:
    return (context or get_context()).throttles.status()
