"""
Defines the request and response values that flow through the pipeline.

Requests are immutable: every `with_*` method returns a new request and leaves
the original untouched, so a request can be shared, reused and retried freely.
"""

import base64
from dataclasses import dataclass, field, replace
from pathlib import Path
import string
from typing import (TYPE_CHECKING, Any, BinaryIO, Callable, Iterable, Iterator, List, Mapping, Optional,
                    Tuple, Union)
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import requests

from . import codec as codecs
from .errors import InvalidRequest
from .options import DEFAULT_MAX_TRIES, CacheConfig, ErrorConfig, RetryConfig, ThrottleConfig

if TYPE_CHECKING:
    from .oauth import OAuthAuth


__version__ = '0.1.0'

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_USER_AGENT = 'performed/{} {}'.format(__version__, requests.utils.default_user_agent())
DEFAULT_PORTS = {'http': 80, 'https': 443}
HTTP_METHODS = frozenset({'GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS', 'TRACE', 'CONNECT'})


@dataclass(frozen=True)
class Url:
    """
    A URL broken into its components.
    """

    scheme: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    path: str = ''
    query: Tuple[Tuple[str, str], ...] = ()
    fragment: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def parse(cls, url: str) -> 'Url':
        parts = urlsplit(url)
        return cls(scheme=parts.scheme or None,
                   host=parts.hostname,
                   port=parts.port,
                   path=parts.path,
                   query=tuple(parse_qsl(parts.query, keep_blank_values=True)),
                   fragment=parts.fragment or None,
                   username=parts.username,
                   password=parts.password)

    @property
    def origin(self) -> str:
        return '{}://{}'.format(self.scheme, self.netloc(credentials=False))

    def netloc(self, credentials: bool = True) -> str:
        netloc = self.host or ''
        if self.port is not None:
            netloc = '{}:{}'.format(netloc, self.port)
        if credentials and self.username is not None:
            userinfo = quote(self.username, safe='')
            if self.password is not None:
                userinfo = '{}:{}'.format(userinfo, quote(self.password, safe=''))
            netloc = '{}@{}'.format(userinfo, netloc)
        return netloc

    def build(self) -> str:
        if self.password is not None and self.username is None:
            raise InvalidRequest('Cannot set url password without username')
        return urlunsplit((self.scheme or '', self.netloc(), self.path,
                           urlencode(self.query), self.fragment or ''))

    def normalized(self) -> str:
        """
        A canonical form for comparisons: lower-case scheme and host, no
        default port, no credentials or fragment, and a non-empty path.
        """
        scheme = (self.scheme or '').lower()
        host = (self.host or '').lower()
        if self.port is not None and DEFAULT_PORTS.get(scheme) != self.port:
            host = '{}:{}'.format(host, self.port)
        return urlunsplit((scheme, host, self.path or '/', urlencode(self.query), ''))

    def with_path(self, path: str) -> 'Url':
        """
        Append `path` to the current path.
        """
        if not path:
            return self
        return replace(self, path=self.path.rstrip('/') + '/' + path.lstrip('/'))

    def with_query(self, params: Mapping[str, Any]) -> 'Url':
        """
        Merge `params` into the query. A value of `None` removes a parameter.
        """
        query = [(key, value) for key, value in self.query if key not in params]
        query.extend((key, str(value)) for key, value in params.items() if value is not None)
        return replace(self, query=tuple(query))

    def __str__(self) -> str:
        return self.build()


HeadersLike = Union['Headers', Mapping[str, Any], Iterable[Tuple[str, Any]], None]


class Headers(Mapping):
    """
    An immutable, case-insensitive header multimap.

    Duplicate headers are kept in insertion order. Looking a header up by name
    joins its values with ", ".
    """

    def __init__(self, items: HeadersLike = None) -> None:
        if items is None:
            pairs = ()
        elif isinstance(items, Headers):
            pairs = items.multi_items()
        elif isinstance(items, Mapping):
            pairs = tuple(items.items())
        else:
            pairs = tuple(items)
        self.__items = tuple((str(key), str(value)) for key, value in pairs)

    def multi_items(self) -> Tuple[Tuple[str, str], ...]:
        return self.__items

    def get_all(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self.__items if key.lower() == lowered]

    def set(self, name: str, value: Any) -> 'Headers':
        """
        Replace every value of `name` with `value`. `None` removes the header.
        """
        result = self.remove(name)
        if value is None:
            return result
        return Headers(result.multi_items() + ((name, value),))

    def add(self, name: str, value: Any) -> 'Headers':
        return Headers(self.__items + ((name, value),))

    def remove(self, name: str) -> 'Headers':
        lowered = name.lower()
        return Headers(pair for pair in self.__items if pair[0].lower() != lowered)

    def update(self, other: HeadersLike) -> 'Headers':
        result = self
        for key, value in Headers(other).multi_items():
            result = result.set(key, value)
        return result

    def to_dict(self) -> requests.structures.CaseInsensitiveDict:
        return requests.structures.CaseInsensitiveDict((key, self[key]) for key in self)

    # region Mapping methods

    def __getitem__(self, name: str) -> str:
        values = self.get_all(name)
        if not values:
            raise KeyError(name)
        return ', '.join(values)

    def __iter__(self) -> Iterator[str]:
        seen = set()
        for key, _ in self.__items:
            if key.lower() not in seen:
                seen.add(key.lower())
                yield key

    def __len__(self) -> int:
        return len({key.lower() for key, _ in self.__items})

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        lowered = name.lower()
        return any(key.lower() == lowered for key, _ in self.__items)

    # endregion

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping) and not isinstance(other, Headers):
            other = Headers(other)
        if not isinstance(other, Headers):
            return NotImplemented
        return self._canonical() == other._canonical()

    def __hash__(self) -> int:
        return hash(self._canonical())

    def _canonical(self) -> Tuple[Tuple[str, str], ...]:
        return tuple((key.lower(), value) for key, value in self.__items)

    def __repr__(self) -> str:
        return 'Headers({!r})'.format(list(self.__items))


@dataclass(frozen=True)
class Body:
    """
    A request payload: either raw bytes or a value pending encoding by `codec`.
    """

    data: Any
    codec: Optional[codecs.BodyCodec] = None
    content_type: Optional[str] = None

    def encode(self) -> Tuple[bytes, Optional[str]]:
        if self.codec is not None:
            data, content_type = self.codec.encode(self.data)
            return data, self.content_type or content_type
        if isinstance(self.data, str):
            return self.data.encode('utf-8'), self.content_type or 'text/plain; charset=utf-8'
        return bytes(self.data), self.content_type


@dataclass(frozen=True)
class Request:
    url: Url
    method: Optional[str] = None
    """
    The HTTP method. When unset, GET is used, or POST if the request has a body.
    """

    headers: Headers = field(default_factory=Headers)
    body: Optional[Body] = None
    timeout: Optional[float] = None
    retry: Optional[RetryConfig] = None
    throttle: Optional[ThrottleConfig] = None
    cache: Optional[CacheConfig] = None
    error: ErrorConfig = field(default_factory=ErrorConfig)
    auth: Optional['OAuthAuth'] = None

    @property
    def effective_method(self) -> str:
        if self.method is not None:
            return self.method
        return 'POST' if self.body is not None else 'GET'

    # region URL

    def with_url(self, url: Union[str, Url]) -> 'Request':
        return replace(self, url=url if isinstance(url, Url) else Url.parse(url))

    def with_url_path(self, path: str) -> 'Request':
        return replace(self, url=self.url.with_path(path))

    def with_query(self, params: Optional[Mapping[str, Any]] = None, **kw) -> 'Request':
        merged = dict(params or {})
        merged.update(kw)
        return replace(self, url=self.url.with_query(merged))

    def with_template(self, template: str, **values) -> 'Request':
        """
        Set method and path from a template such as `"GET /users/{user}"`.

        Values are percent-encoded before substitution.
        """
        method, _, path = template.strip().partition(' ')
        if not path:
            method, path = None, method
        elif method.upper() not in HTTP_METHODS:
            raise InvalidRequest('Unknown HTTP method in template: {}'.format(method))
        names = [name for _, name, _, _ in string.Formatter().parse(path) if name]
        missing = [name for name in names if name not in values]
        if missing:
            raise InvalidRequest('Template variables are missing a value: {}'.format(', '.join(missing)))
        path = path.format(**{name: quote(str(values[name]), safe='') for name in names})
        result = self if method is None else self.with_method(method)
        if path.startswith('/'):
            return replace(result, url=replace(result.url, path=path))
        return result.with_url(path)

    # endregion

    # region Method, headers, body

    def with_method(self, method: str) -> 'Request':
        return replace(self, method=method.upper())

    def with_headers(self, headers: HeadersLike = None, **kw) -> 'Request':
        result = self.headers.update(headers)
        for key, value in kw.items():
            result = result.set(key.replace('_', '-'), value)
        return replace(self, headers=result)

    def with_user_agent(self, user_agent: str) -> 'Request':
        return replace(self, headers=self.headers.set('User-Agent', user_agent))

    def with_body_raw(self, data: Union[bytes, str], content_type: Optional[str] = None) -> 'Request':
        return replace(self, body=Body(data, content_type=content_type))

    def with_body_json(self, value: Any) -> 'Request':
        return replace(self, body=Body(value, codec=codecs.JSON))

    def with_body_form(self, data: Optional[Mapping[str, Any]] = None, **kw) -> 'Request':
        fields = dict(data or {})
        fields.update(kw)
        return replace(self, body=Body(fields, codec=codecs.FORM))

    # endregion

    # region Policies

    def with_timeout(self, seconds: float) -> 'Request':
        if seconds <= 0:
            raise ValueError('Timeout must be positive')
        return replace(self, timeout=seconds)

    def with_retry(self, max_tries: Optional[int] = None, max_seconds: Optional[float] = None,
                   is_transient: Optional[Callable] = None, backoff: Optional[Callable[[int], float]] = None,
                   after: Optional[Callable] = None, is_fatal: Optional[Callable] = None) -> 'Request':
        current = self.retry or RetryConfig()
        changes = {}
        if max_tries is not None:
            if max_tries < 1:
                raise ValueError('max_tries must be at least 1')
            changes['max_tries'] = max_tries
        elif max_seconds is None and self.retry is None:
            changes['max_tries'] = DEFAULT_MAX_TRIES
        if max_seconds is not None:
            changes['max_seconds'] = max_seconds
        if is_transient is not None:
            changes['is_transient'] = is_transient
        if backoff is not None:
            changes['backoff'] = backoff
        if after is not None:
            changes['after'] = after
        if is_fatal is not None:
            changes['is_fatal'] = is_fatal
        return replace(self, retry=replace(current, **changes))

    def with_throttle(self, rate: float, capacity: float = 1.0, realm: Optional[str] = None) -> 'Request':
        if rate <= 0:
            raise ValueError('Throttle rate must be positive')
        if capacity < 1:
            raise ValueError('Throttle capacity must be at least one token')
        return replace(self, throttle=ThrottleConfig(rate=rate, capacity=capacity, realm=realm))

    def with_cache(self, path, vary: Iterable[str] = ()) -> 'Request':
        return replace(self, cache=CacheConfig(path=Path(path), vary=tuple(vary)))

    def with_error(self, is_error: Optional[Callable] = None, body: Optional[Callable] = None) -> 'Request':
        changes = {}
        if is_error is not None:
            changes['is_error'] = is_error
        if body is not None:
            changes['body'] = body
        return replace(self, error=replace(self.error, **changes))

    # endregion

    # region Authentication

    def with_auth_basic(self, username: str, password: str) -> 'Request':
        token = base64.b64encode('{}:{}'.format(username, password).encode('utf-8')).decode('ascii')
        return replace(self, headers=self.headers.set('Authorization', 'Basic {}'.format(token)))

    def with_auth_bearer_token(self, token: str) -> 'Request':
        return replace(self, headers=self.headers.set('Authorization', 'Bearer {}'.format(token)))

    def with_auth(self, auth: Optional['OAuthAuth']) -> 'Request':
        return replace(self, auth=auth)

    # endregion

    def finalize(self) -> 'Request':
        """
        Resolve defaults and encode the body so that the request can be sent
        as-is.

        @throws InvalidRequest
          If the URL lacks a scheme or host.
        """
        if not self.url.scheme or not self.url.host:
            raise InvalidRequest('URL must have a scheme and a host: {!r}'.format(self.url.build()))
        headers = self.headers
        if 'User-Agent' not in headers:
            headers = headers.set('User-Agent', DEFAULT_USER_AGENT)
        body = self.body
        if body is not None:
            data, content_type = body.encode()
            body = Body(data)
            if content_type and 'Content-Type' not in headers:
                headers = headers.set('Content-Type', content_type)
        return replace(self, method=self.effective_method, headers=headers, body=body)

    @property
    def body_bytes(self) -> Optional[bytes]:
        if self.body is None:
            return None
        return self.body.encode()[0]


def request(url: Union[str, Url]) -> Request:
    return Request(url=url if isinstance(url, Url) else Url.parse(url))


class ResponseBody:
    """
    A response payload that is read from its stream at most once.

    Either iterate the chunks (streaming) or access `content`, which reads
    the whole stream and keeps the bytes.
    """

    def __init__(self, stream: Optional[BinaryIO] = None, content: Optional[bytes] = None) -> None:
        self.__stream = stream
        self.__content = content
        self.__consumed = False

    @classmethod
    def of(cls, content: bytes) -> 'ResponseBody':
        return cls(content=content)

    @property
    def content(self) -> bytes:
        if self.__content is None:
            if self.__consumed:
                raise RuntimeError('The response body was already streamed')
            self.__content = b''.join(self._read_stream(DEFAULT_CHUNK_SIZE))
        return self.__content

    def iter_chunks(self, size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        if self.__content is not None:
            for offset in range(0, len(self.__content), size):
                yield self.__content[offset:offset + size]
            return
        if self.__consumed:
            raise RuntimeError('The response body was already streamed')
        yield from self._read_stream(size)

    def _read_stream(self, size: int) -> Iterator[bytes]:
        self.__consumed = True
        if self.__stream is None:
            return
        try:
            # Reading until the empty chunk lets wrapped streams see EOF.
            for chunk in iter(lambda: self.__stream.read(size), b''):
                yield chunk
        finally:
            self.__stream.close()

    def close(self) -> None:
        # Also closes a stream that was only partly iterated.
        self.__consumed = True
        if self.__stream is not None and not self.__stream.closed:
            self.__stream.close()


@dataclass(frozen=True)
class Response:
    status: int
    reason: str
    headers: Headers
    body: ResponseBody = field(compare=False, repr=False)
    request: Optional[Request] = field(default=None, compare=False, repr=False)
    cache_status: Optional[str] = None
    """
    `"hit"` when served from a fresh cache entry, `"not-modified"` when a
    cached entry was revalidated by a 304, `None` otherwise.
    """

    @property
    def url(self) -> Optional[str]:
        if self.request is None:
            return None
        return self.request.url.build()

    @property
    def content(self) -> bytes:
        return self.body.content

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get('Content-Type')

    @property
    def text(self) -> str:
        return self.content.decode(codecs.charset(self.content_type), errors='replace')

    def json(self) -> Any:
        return codecs.JSON.decode(self.content, self.content_type)

    def decode(self, body_codec: codecs.BodyCodec) -> Any:
        return body_codec.decode(self.content, self.content_type)

    def iter_chunks(self, size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        return self.body.iter_chunks(size)

    def close(self) -> None:
        self.body.close()

    def with_cache_status(self, cache_status: Optional[str]) -> 'Response':
        return replace(self, cache_status=cache_status)

    def with_request(self, request: Request) -> 'Response':
        return replace(self, request=request)


@dataclass
class CacheEntry:
    """
    A cache entry.

    A cache entry deliberately does not hold a response body in memory since
    bodies can be arbitrarily large. The response body is a stream over the
    file that contains it.
    """

    request: Request
    response: Response
    stored_at: float
    """
    UNIX timestamp at which the response was stored or last revalidated.
    """

    @property
    def etag(self) -> Optional[str]:
        return self.response.headers.get('ETag')

    @property
    def last_modified(self) -> Optional[str]:
        return self.response.headers.get('Last-Modified')

    @property
    def has_validator(self) -> bool:
        return self.etag is not None or self.last_modified is not None
