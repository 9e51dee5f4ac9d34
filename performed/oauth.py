"""
OAuth token acquisition, caching and injection.

A token moves through these states, per client and flow parameters:

    absent -> acquiring -> valid -> refreshing -> valid
                                             \\-> absent -> acquiring (once)

Flows (see `performed.flows`) only know how to exchange something for a token
at the token endpoint; caching, refreshing and injecting the token into
requests is the same for every flow and lives here.
"""

from dataclasses import dataclass, field
import hashlib
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .codec import media_type
from .errors import AuthError, TransportFailure
from .model import Request, Response, request as new_request


logger = logging.getLogger(__name__)

# Tokens this close to their expiry are treated as expired.
EXPIRY_MARGIN = 5.0


@dataclass(frozen=True)
class OAuthClient:
    """
    An OAuth client registration.

    The secret may be given as a zero-argument callable, e.g. one that
    decrypts it, so that it is only revealed when a token is requested.
    """

    id: str
    token_url: str
    secret: Union[str, Callable[[], str], None] = field(default=None, repr=False)
    auth: str = 'body'
    """
    How the client authenticates at the token endpoint: `"body"` puts the
    credentials in the form, `"header"` uses HTTP basic auth.
    """

    authorization_url: Optional[str] = None
    device_url: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.auth not in ('body', 'header'):
            raise ValueError('Client auth must be "body" or "header", not {!r}'.format(self.auth))

    def reveal_secret(self) -> Optional[str]:
        if callable(self.secret):
            return self.secret()
        return self.secret

    def authenticate(self, token_request: Request) -> Request:
        """
        Attach the client credentials to a request for the token endpoint.
        """
        secret = self.reveal_secret()
        if self.auth == 'header' and secret is not None:
            return token_request.with_auth_basic(self.id, secret)
        fields = dict(token_request.body.data) if token_request.body is not None else {}
        fields['client_id'] = self.id
        if secret is not None:
            fields['client_secret'] = secret
        return token_request.with_body_form(fields)


@dataclass(frozen=True)
class Token:
    access_token: str = field(repr=False)
    token_type: str = 'bearer'
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[float] = None
    scope: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, data: Mapping[str, Any], now: float) -> 'Token':
        if 'access_token' not in data:
            raise KeyError('access_token')
        expires_in = data.get('expires_in')
        known = {'access_token', 'token_type', 'refresh_token', 'expires_in', 'scope'}
        return cls(access_token=data['access_token'],
                   token_type=data.get('token_type') or 'bearer',
                   refresh_token=data.get('refresh_token'),
                   expires_at=None if expires_in is None else now + float(expires_in),
                   scope=data.get('scope'),
                   extra={key: value for key, value in data.items() if key not in known})

    def has_expired(self, now: float, margin: float = EXPIRY_MARGIN) -> bool:
        return self.expires_at is not None and now + margin >= self.expires_at

    @property
    def authorization(self) -> str:
        token_type = 'Bearer' if self.token_type.lower() == 'bearer' else self.token_type
        return '{} {}'.format(token_type, self.access_token)


Flow = Callable[[OAuthClient, Mapping[str, Any], 'TokenExchange'], Token]


@dataclass(frozen=True)
class OAuthAuth:
    """
    The auth strategy attached to a request: which client, which flow, and
    the flow's parameters.
    """

    client: OAuthClient
    flow: Flow
    params: Tuple[Tuple[str, Any], ...] = ()

    @property
    def parameters(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def cache_key(self) -> str:
        params = json.dumps(self.parameters, sort_keys=True, default=repr)
        flow = getattr(self.flow, '__qualname__', repr(self.flow))
        digest = hashlib.sha256('\n'.join([self.client.token_url, flow, params]).encode('utf-8')).hexdigest()
        return '{}:{}'.format(self.client.id, digest)


def oauth(client: OAuthClient, flow: Flow, **params) -> OAuthAuth:
    return OAuthAuth(client=client, flow=flow, params=tuple(sorted(params.items())))


class TokenCache:
    """
    Process-wide token storage.

    Each key has its own lock, held while a token is acquired or refreshed, so
    that concurrent requests for the same key trigger a single exchange.
    """

    def __init__(self) -> None:
        self.__tokens = {}  # type: Dict[str, Token]
        self.__locks = {}  # type: Dict[str, threading.RLock]
        self.__lock = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self.__lock:
            lock = self.__locks.get(key)
            if lock is None:
                lock = self.__locks[key] = threading.RLock()
            return lock

    def get(self, key: str) -> Optional[Token]:
        with self.__lock:
            return self.__tokens.get(key)

    def set(self, key: str, token: Token) -> None:
        with self.__lock:
            self.__tokens[key] = token

    def invalidate(self, key: str) -> None:
        with self.__lock:
            self.__tokens.pop(key, None)

    def clear(self) -> None:
        with self.__lock:
            self.__tokens.clear()


class TokenExchange:
    """
    Talks to OAuth endpoints on behalf of flows.

    @param send
      Performs a request and returns its response without raising for HTTP
      error statuses.
    """

    def __init__(self, send: Callable[[Request], Response], clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.__send = send
        self.clock = clock
        self.sleep = sleep

    def post(self, client: OAuthClient, url: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """
        POST a form to an OAuth endpoint and decode the JSON reply.

        @throws AuthError
          If the endpoint reports an error or cannot be reached.
        """
        token_request = (new_request(url)
                         .with_body_form({key: value for key, value in fields.items() if value is not None})
                         .with_headers(Accept='application/json')
                         .with_error(is_error=lambda response: False))
        token_request = client.authenticate(token_request)
        try:
            response = self.__send(token_request)
        except TransportFailure as e:
            raise AuthError(token_request, 'transport_failure', str(e.cause)) from e

        data = _decode(response)
        if 200 <= response.status < 300 and 'error' not in data:
            return data
        raise AuthError(token_request,
                        data.get('error') or 'http_{}'.format(response.status),
                        data.get('error_description'),
                        data.get('error_uri'))

    def request_token(self, client: OAuthClient, grant: Mapping[str, Any]) -> Token:
        data = self.post(client, client.token_url, grant)
        try:
            return Token.from_response(data, self.clock())
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(new_request(client.token_url), 'invalid_response',
                            'Token response is missing or has a malformed {}'.format(e))

    def refresh(self, client: OAuthClient, refresh_token: str, scope: Any = None) -> Token:
        return self.request_token(client, {'grant_type': 'refresh_token',
                                           'refresh_token': refresh_token,
                                           'scope': scope_string(scope)})


def scope_string(scope: Any) -> Optional[str]:
    if scope is None or isinstance(scope, str):
        return scope
    return ' '.join(scope)


def _decode(response: Response) -> Dict[str, Any]:
    if media_type(response.content_type) not in ('application/json', ''):
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def is_invalid_token(response: Response) -> bool:
    """
    True for a 401 whose `WWW-Authenticate` header or JSON body says the
    access token was rejected.
    """
    if response.status != 401:
        return False
    challenge = response.headers.get('WWW-Authenticate', '')
    if 'invalid_token' in challenge:
        return True
    return _decode(response).get('error') == 'invalid_token'


class OAuthEngine:
    def __init__(self, cache: TokenCache, exchange: TokenExchange) -> None:
        self.__cache = cache
        self.__exchange = exchange

    def token(self, auth: OAuthAuth) -> Token:
        """
        A valid token for `auth`, acquiring or refreshing one if needed.

        @throws AuthError
          If no token can be obtained.
        """
        key = auth.cache_key
        with self.__cache.lock_for(key):
            token = self.__cache.get(key)
            now = self.__exchange.clock()
            if token is not None and not token.has_expired(now):
                return token

            if token is not None and token.refresh_token is not None:
                logger.info('Token for client {} has expired. Refreshing it.'.format(auth.client.id))
                try:
                    token = self._refresh(auth, token)
                    self.__cache.set(key, token)
                    return token
                except AuthError as e:
                    logger.warning('Refreshing the token for client {} failed: {}'.format(auth.client.id, e))
            self.__cache.invalidate(key)

            logger.info('Acquiring a token for client {}.'.format(auth.client.id))
            token = auth.flow(auth.client, auth.parameters, self.__exchange)
            self.__cache.set(key, token)
            return token

    def _refresh(self, auth: OAuthAuth, token: Token) -> Token:
        refreshed = self.__exchange.refresh(auth.client, token.refresh_token, auth.parameters.get('scope'))
        if refreshed.refresh_token is None:
            # The server may keep the refresh token the same and not send it again.
            refreshed = Token(access_token=refreshed.access_token, token_type=refreshed.token_type,
                              refresh_token=token.refresh_token, expires_at=refreshed.expires_at,
                              scope=refreshed.scope, extra=refreshed.extra)
        return refreshed

    def authenticate(self, request: Request) -> Request:
        """
        Inject the token for `request.auth`. An explicit Authorization header
        is never overwritten.
        """
        if request.auth is None or 'Authorization' in request.headers:
            return request
        token = self.token(request.auth)
        return request.with_headers({'Authorization': token.authorization})

    def invalidate(self, auth: OAuthAuth) -> None:
        logger.info('Invalidating the token for client {}.'.format(auth.client.id))
        self.__cache.invalidate(auth.cache_key)
