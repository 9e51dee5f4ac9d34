from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
import hashlib
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import threading
import time
from typing import Callable, Dict, Iterable, Mapping, Optional

from .errors import CacheError, CorruptEntry
from .model import CacheEntry, Headers, Request, Response, ResponseBody, Url
from .options import CacheConfig
from .util import Tee, clamp, parse_http_date


logger = logging.getLogger(__name__)

KeyFunc = Callable[[Request], str]
Clock = Callable[[], float]

# Headers a 304 may carry that replace the stored ones.
REFRESHED_HEADERS = ('Cache-Control', 'Content-Location', 'Date', 'ETag', 'Expires', 'Last-Modified', 'Vary')

# One lock per cache directory, shared by every `FileCache` opened on it.
_locks = {}  # type: Dict[str, threading.RLock]
_locks_guard = threading.Lock()


def fingerprint(request: Request, vary: Iterable[str] = ()) -> str:
    """
    The canonical cache key of `request`: method, normalized URL and the
    values of the `vary` headers.

    With no `vary` headers, representations that differ only by request
    headers (e.g. content negotiation) share a key.
    """
    parts = [request.effective_method, request.url.normalized()]
    for name in sorted(header.lower() for header in vary):
        parts.append('{}: {}'.format(name, request.headers.get(name, '')))
    return '\n'.join(parts)


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember a response such that it can be recalled later for a
    matching request. Note that this deliberately precludes certain responsibilities such as automatic cache
    invalidation. Freshness is judged by `HttpAwareCache`; entries are only removed by `delete()` or `clear()`.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache.
        @return
          A cached response for `request`, or `None` if there is no valid one.
        """

    @abstractmethod
    def add(self, request: Request, response: Response, stored_at: float) -> Optional[CacheEntry]:
        """
        Add a response to the cache, replacing any existing entry for `request`.

        Note that the body stream from `response` may be consumed as part of caching. The component using the cache
        should be sure to read from the returned entry's response body instead.

        @param request
          The request for which a response should be cached.
        @param response
          The response to cache.
        @param stored_at
          UNIX timestamp of the response, used to judge freshness later on.
        @return
          A cached entry, or `None` if the cache could not cache the response.
        """

    @abstractmethod
    def refresh(self, request: Request, headers: Headers, stored_at: float) -> Optional[CacheEntry]:
        """
        Update the stored metadata of an entry after a successful revalidation.

        @param headers
          Headers to merge into the stored response headers.
        @return
          The updated entry, or `None` if there is no entry to refresh.
        """

    @abstractmethod
    def delete(self, request: Request) -> None:
        """
        Delete a response from the cache.

        @param request
            A request to find in the cache. The corresponding response will be deleted.
        """

    def clear(self) -> None:
        """
        Remove every entry from the cache.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


class Freshness(Enum):
    FRESH = 'fresh'
    STALE = 'stale'
    MISS = 'miss'


@dataclass
class CacheLookup:
    freshness: Freshness
    entry: Optional[CacheEntry] = None


def _directives(headers: Mapping[str, str]) -> dict:
    result = {}
    for directive in headers.get('Cache-Control', '').split(','):
        name, _, value = directive.strip().partition('=')
        if name:
            result[name.lower()] = value.strip('"') or None
    return result


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    - Only GET responses with a cachable status are stored, and only when they
      carry a validator (ETag / Last-Modified) or an explicit freshness
      directive (max-age / Expires), and no `no-store`.
    - The Vary headers recorded with an entry must match the incoming request.
    - Freshness is judged from `max-age`, or from `Expires` relative to `Date`.
    """

    def __init__(self, implementation: Cache, clock: Clock = time.time) -> None:
        self.__impl = implementation
        self.__clock = clock

    def get(self, request: Request) -> Optional[CacheEntry]:
        logger.info('Delegating cache lookup to decorated cache.')
        entry = self.__impl.get(request)
        if entry is None:
            logger.info('Decorated cache did not find a matching cache entry.')
            return None

        # region Only cache for response statuses that make sense to cache.
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Status code {} is not cachable'.format(entry.response.status))
            entry.response.close()
            return None
        if not self._is_cachable_method(entry.request.effective_method):
            logger.info('Method {} is not cachable'.format(entry.request.effective_method))
            entry.response.close()
            return None
        # endregion

        # region Only cache if all specific Vary headers match.
        vary_header_keys = [key.strip() for key in entry.response.headers.get('Vary', '').split(',') if key.strip()]
        for key in vary_header_keys:
            if key == '*':
                logger.info('Cache entry is rejected because it varies on everything.')
                entry.response.close()
                return None
            expected_value = entry.request.headers.get(key)
            value = request.headers.get(key)
            if expected_value != value:
                logger.info('Cache entry is rejected because the value for a Vary header is not equal to the value in the original request. Header: {}. Expected value: {}. Actual value: {}'.format(key, expected_value, value))
                entry.response.close()
                return None
        # endregion

        logger.info('Cache entry passed all HTTP checks. Returning entry from cache.')

        return entry

    def lookup(self, request: Request) -> CacheLookup:
        entry = self.get(request)
        if entry is None:
            return CacheLookup(Freshness.MISS)
        if self.is_fresh(entry):
            logger.info('Cache entry for {} is fresh.'.format(request.url.build()))
            return CacheLookup(Freshness.FRESH, entry)
        if entry.has_validator:
            logger.info('Cache entry for {} is stale but can be revalidated.'.format(request.url.build()))
            return CacheLookup(Freshness.STALE, entry)
        logger.info('Cache entry for {} is stale and has no validator.'.format(request.url.build()))
        entry.response.close()
        return CacheLookup(Freshness.MISS)

    def add(self, request: Request, response: Response, stored_at: Optional[float] = None) -> Optional[CacheEntry]:
        if not self._is_cachable_status_code(response.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(response.status))
            return None
        if not self._is_cachable_method(request.effective_method):
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.effective_method))
            return None
        directives = _directives(response.headers)
        if 'no-store' in directives:
            logger.info('Refusing to create cache entry. The response forbids storage.')
            return None
        if not self._has_validator(response) and self.freshness_lifetime(response.headers) is None:
            logger.info('Refusing to create cache entry. The response has neither a validator nor a freshness directive.')
            return None

        logger.info('Delegating cache entry creation to decorated cache.')
        return self.__impl.add(request, response, self.__clock() if stored_at is None else stored_at)

    def refresh(self, request: Request, headers: Headers, stored_at: Optional[float] = None) -> Optional[CacheEntry]:
        logger.info('Delegating cache entry refresh to decorated cache.')
        return self.__impl.refresh(request, headers, self.__clock() if stored_at is None else stored_at)

    def delete(self, request: Request) -> None:
        logger.info('Delegating cache entry deletion to decorated cache.')
        self.__impl.delete(request)

    def clear(self) -> None:
        self.__impl.clear()

    def close(self):
        self.__impl.close()

    # region Freshness

    def freshness_lifetime(self, headers: Mapping[str, str]) -> Optional[float]:
        directives = _directives(headers)
        if 'no-cache' in directives:
            return 0.0
        if 'max-age' in directives:
            try:
                return max(0.0, float(directives['max-age']))
            except (TypeError, ValueError):
                return 0.0
        expires = headers.get('Expires')
        if expires is not None:
            expires_at = parse_http_date(expires)
            if expires_at is None:
                # An invalid date means "already expired".
                return 0.0
            date = parse_http_date(headers.get('Date'))
            base = date.timestamp() if date is not None else None
            if base is None:
                return None
            return max(0.0, expires_at.timestamp() - base)
        return None

    def is_fresh(self, entry: CacheEntry) -> bool:
        lifetime = self.freshness_lifetime(entry.response.headers)
        if lifetime is None:
            return False
        age = self.__clock() - entry.stored_at
        return age < lifetime

    # endregion

    # region Revalidation

    def conditional(self, request: Request, entry: CacheEntry) -> Request:
        """
        Attach the entry's validators to `request`.
        """
        headers = request.headers
        if entry.etag is not None and 'If-None-Match' not in headers:
            headers = headers.set('If-None-Match', entry.etag)
        if entry.last_modified is not None and 'If-Modified-Since' not in headers:
            headers = headers.set('If-Modified-Since', entry.last_modified)
        return replace(request, headers=headers)

    def revalidated(self, request: Request, entry: CacheEntry, not_modified: Response) -> Response:
        """
        Handle a 304 reply: refresh the entry and answer with the cached body.
        """
        headers = Headers((name, not_modified.headers[name]) for name in REFRESHED_HEADERS
                          if name in not_modified.headers)
        not_modified.close()
        refreshed = self.refresh(request, headers)
        if refreshed is None:
            refreshed = entry
        else:
            entry.response.close()
        return refreshed.response.with_request(request).with_cache_status('not-modified')

    # endregion

    def _has_validator(self, response: Response) -> bool:
        return 'ETag' in response.headers or 'Last-Modified' in response.headers

    def _is_cachable_status_code(self, status: int) -> bool:
        return status in (200, 203, 300, 301,)

    def _is_cachable_method(self, method: str) -> bool:
        return method in {'GET'}


class FileCache(Cache):
    """
    Stores entries as JSON files pointing at body files.

    Every write goes to a temporary file inside the cache directory which is
    then moved into place with `os.replace()`, so readers only ever see a
    complete entry, and the last of several concurrent writers wins.
    """

    def __init__(self, directory: Path, cache_directory_levels: int, key_func: KeyFunc = fingerprint) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        @param key_func
          Derives the cache key of a request.
        """
        self.__directory = Path(directory)
        self.__entry_directory = self.__directory / 'entries'
        self.__body_directory = self.__directory / 'bodies'
        self.__temp_directory = self.__directory / 'tmp'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)
        self.__key_func = key_func
        self.__lock = _lock_for(self.__directory)

    @property
    def directory(self) -> Path:
        return self.__directory

    def _get_path(self, key: str) -> Path:
        hashed = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _entry_path(self, request: Request) -> Path:
        return self.__entry_directory / self._get_path(self.__key_func(request))

    def _load_entry(self, request: Request) -> dict:
        """
        Read a cache entry from a file.

        @throws FileNotFoundError
            If there is no entry for `request`.
        @throws CorruptEntry
            If the entry file could not be parsed.
        """
        entry_path = self._entry_path(request)
        try:
            with open(entry_path, 'r') as f:
                entry = json.load(f)
            for section, keys in (('request', ('method', 'url', 'headers')),
                                  ('response', ('status', 'reason', 'headers', 'body'))):
                missing = [key for key in keys if key not in entry[section]]
                if missing:
                    raise KeyError(missing[0])
            if 'stored_at' not in entry:
                raise KeyError('stored_at')
            return entry
        except (KeyError, TypeError, json.JSONDecodeError):
            raise CorruptEntry(entry_path)

    def _to_entry(self, serialized: dict) -> CacheEntry:
        body_path = self.__body_directory / serialized['response']['body']
        request = Request(url=Url.parse(serialized['request']['url']),
                          method=serialized['request']['method'],
                          headers=Headers(serialized['request']['headers']))
        return CacheEntry(
            request=request,
            response=Response(
                status=serialized['response']['status'],
                reason=serialized['response']['reason'],
                headers=Headers(serialized['response']['headers']),
                body=ResponseBody(open(body_path, 'rb')),
                request=request,
            ),
            stored_at=serialized['stored_at'],
        )

    def get(self, request: Request) -> Optional[CacheEntry]:
        with self.__lock:
            try:
                logger.info('Looking at the file system for a cache entry matching the request.')
                serialized = self._load_entry(request)
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry. Deleting the entry file.')
                self._unlink(e.entry_path)
                return None
            except FileNotFoundError:
                logger.info('No matching cache entry found.')
                return None

            try:
                entry = self._to_entry(serialized)
            except FileNotFoundError:
                self._discard_dangling_entry(request, serialized)
                return None
            logger.info('Loaded entry file. Returning the cache entry')
            return entry

    def add(self, request: Request, response: Response, stored_at: float) -> CacheEntry:
        logger.info('Building path to the entry file.')
        entry_path = self._entry_path(request)

        logger.info('Building randomized path to the body file.')
        # We use a randomized body path as the entry can point to it anyways.
        body_path = self.__body_directory / self._split_path(os.urandom(32).hex())

        serialized = {
            'request': {
                'method': request.effective_method,
                'url': request.url.build(),
                'headers': [list(pair) for pair in request.headers.multi_items()],
            },
            'response': {
                'status': response.status,
                'reason': response.reason,
                'headers': [list(pair) for pair in response.headers.multi_items()],
                'body': str(body_path.relative_to(self.__body_directory)),
            },
            'stored_at': stored_at,
        }

        logger.info('Tee the response body so we can write to the cache as it is read.')
        # The way we are using `Tee` here means that we will only cache a body that is fully read. This avoids waiting
        # on the full download - say, if the user wants to interrupt the download - while also ensuring we don't write
        # partial state to the cache.
        temp_body_file = self._temporary_file()

        def on_complete():
            logger.info('Download complete.')
            with self.__lock:
                try:
                    logger.info('Moving temporary body file into permanent location')
                    body_path.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(temp_body_file.name, str(body_path))

                    logger.info('Replacing entry file so that it points to the new body file')
                    previous = self._previous_body(request)
                    self._write_entry(entry_path, serialized)
                    if previous is not None and previous != body_path:
                        self._unlink(previous)
                except OSError:
                    # The caller already has the bytes; only the cache entry is lost.
                    logger.exception('Could not store cache entry {}'.format(entry_path))
                    self._unlink(Path(temp_body_file.name))
                    self._unlink(body_path)

        def on_abandon():
            logger.info('The response body was not read to the end. Discarding the temporary body file.')
            self._unlink(Path(temp_body_file.name))

        tee = Tee(_ChunkReader(response.body), temp_body_file, on_complete, on_abandon)

        logger.info('Build a new cache entry using the tee\'d response body')
        return CacheEntry(
            request=request,
            response=replace(response, body=ResponseBody(tee)),
            stored_at=stored_at,
        )

    def refresh(self, request: Request, headers: Headers, stored_at: float) -> Optional[CacheEntry]:
        with self.__lock:
            try:
                serialized = self._load_entry(request)
            except FileNotFoundError:
                return None
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry while refreshing. Deleting the entry file.')
                self._unlink(e.entry_path)
                return None

            stored = Headers(serialized['response']['headers']).update(headers)
            serialized['response']['headers'] = [list(pair) for pair in stored.multi_items()]
            serialized['stored_at'] = stored_at
            try:
                self._write_entry(self._entry_path(request), serialized)
                return self._to_entry(serialized)
            except FileNotFoundError:
                self._discard_dangling_entry(request, serialized)
                return None
            except OSError as e:
                raise CacheError('Could not refresh cache entry: {}'.format(e)) from e

    def delete(self, request: Request) -> None:
        with self.__lock:
            try:
                logger.info('Looking at the file system for a cache entry matching the request so that we can delete both the entry and the associated body.')
                serialized = self._load_entry(request)
                logger.info('Found a matching cache entry. Marking both the entry file and the body file for deletion.')
                paths_to_delete = [self._entry_path(request), self.__body_directory / serialized['response']['body']]
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry. Marking only the entry file for deletion.')
                paths_to_delete = [e.entry_path]
            except FileNotFoundError:
                logger.info('No matching cache entry found. Nothing to delete.')
                return

            for path in paths_to_delete:
                self._unlink(path)

    def clear(self) -> None:
        logger.info('Clearing cache directory {}'.format(self.__directory))
        with self.__lock:
            for directory in (self.__entry_directory, self.__body_directory, self.__temp_directory):
                shutil.rmtree(str(directory), ignore_errors=True)

    # region Helpers

    def _temporary_file(self):
        try:
            self.__temp_directory.mkdir(parents=True, exist_ok=True)
            return tempfile.NamedTemporaryFile(mode='wb', dir=str(self.__temp_directory), delete=False)
        except OSError as e:
            raise CacheError('Could not create a temporary file in {}: {}'.format(self.__temp_directory, e)) from e

    def _write_entry(self, entry_path: Path, serialized: dict) -> None:
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        with self._temporary_file() as f:
            f.write(json.dumps(serialized).encode('utf-8'))
        os.replace(f.name, str(entry_path))

    def _previous_body(self, request: Request) -> Optional[Path]:
        try:
            serialized = self._load_entry(request)
        except (FileNotFoundError, CorruptEntry):
            return None
        return self.__body_directory / serialized['response']['body']

    def _discard_dangling_entry(self, request: Request, serialized: dict) -> None:
        """
        Delete the entry file for `request` if it still points at the missing
        body named by `serialized`. A writer may have replaced the entry since
        it was loaded, in which case it is left alone.
        """
        try:
            current = self._load_entry(request)
        except (FileNotFoundError, CorruptEntry):
            return
        if current['response']['body'] != serialized['response']['body']:
            logger.info('The cache entry was replaced while it was being read. Keeping the new entry.')
            return
        logger.warning('The body file of a cache entry is missing. Deleting the entry file.')
        self._unlink(self._entry_path(request))

    def _unlink(self, path: Path) -> None:
        try:
            logger.info('Deleting {}'.format(path))
            path.unlink()
        except FileNotFoundError:
            pass
        except Exception:
            logger.exception('Unexpected error occurred while deleting {}'.format(path))

    # endregion


def _lock_for(directory: Path) -> threading.RLock:
    key = os.path.abspath(str(directory))
    with _locks_guard:
        return _locks.setdefault(key, threading.RLock())


class _ChunkReader:
    """
    Presents a `ResponseBody` as a readable stream.
    """

    def __init__(self, body: ResponseBody) -> None:
        self.__chunks = body.iter_chunks()
        self.__body = body
        self.__closed = False

    def read(self, size=-1) -> bytes:
        return next(self.__chunks, b'')

    def readline(self, size=-1) -> bytes:
        return self.read(size)

    @property
    def closed(self) -> bool:
        return self.__closed

    def close(self) -> None:
        self.__closed = True
        self.__body.close()


def open_cache(config: CacheConfig, clock: Clock = time.time) -> HttpAwareCache:
    return HttpAwareCache(
        FileCache(config.path, config.levels, key_func=lambda request: fingerprint(request, config.vary)),
        clock)
