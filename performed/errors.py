from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .model import Request, Response


class InvalidRequest(ValueError):
    """
    The request cannot be finalized for sending, e.g. its URL has no host.
    """


class PerformError(Exception):
    """
    A request failed for good: retries, if any, are exhausted.
    """

    kind = 'perform-error'

    def __init__(self, request: 'Request', attempts: int, message: str) -> None:
        super().__init__(message)
        self.__request = request
        self.__attempts = attempts

    @property
    def request(self) -> 'Request':
        return self.__request

    @property
    def attempts(self) -> int:
        return self.__attempts


class TransportFailure(PerformError):
    """
    The exchange never produced an HTTP response: connection refused, DNS
    failure, timeout, etc.
    """

    kind = 'transport-failure'

    def __init__(self, request: 'Request', cause: BaseException, attempts: int = 1) -> None:
        super().__init__(request, attempts, '{} {} failed: {} (attempts: {})'.format(
            request.effective_method, request.url.build(), cause, attempts))
        self.__cause = cause

    @property
    def cause(self) -> BaseException:
        return self.__cause

    def with_attempts(self, attempts: int) -> 'TransportFailure':
        error = TransportFailure(self.request, self.__cause, attempts)
        error.__cause__ = self.__cause
        return error


class HttpError(PerformError):
    """
    The server answered with a status classified as an error.
    """

    def __init__(self, response: 'Response', attempts: int, detail: Optional[str] = None) -> None:
        request = response.request
        message = '{} {} failed with HTTP {} {} (attempts: {})'.format(
            request.effective_method, request.url.build(), response.status, response.reason, attempts)
        if detail:
            message = '{}: {}'.format(message, detail)
        super().__init__(request, attempts, message)
        self.__response = response

    @property
    def kind(self) -> str:
        return 'http-error-{}'.format(self.status)

    @property
    def status(self) -> int:
        return self.__response.status

    @property
    def response(self) -> 'Response':
        return self.__response


class AuthError(PerformError):
    """
    No usable OAuth token could be obtained.
    """

    kind = 'auth-error'

    def __init__(self, request: 'Request', error: str, description: Optional[str] = None,
                 uri: Optional[str] = None, attempts: int = 1) -> None:
        message = 'OAuth failure [{}]'.format(error)
        if description:
            message = '{}: {}'.format(message, description)
        if uri:
            message = '{} ({})'.format(message, uri)
        super().__init__(request, attempts, message)
        self.__error = error
        self.__description = description
        self.__uri = uri

    @property
    def error(self) -> str:
        return self.__error

    @property
    def description(self) -> Optional[str]:
        return self.__description

    @property
    def uri(self) -> Optional[str]:
        return self.__uri


class CacheError(Exception):
    """
    The cache could not be read or written.
    """

    kind = 'cache-error'


class CorruptEntry(Exception):
    def __init__(self, entry_path) -> None:
        super().__init__()
        self.__entry_path = entry_path

    @property
    def entry_path(self):
        return self.__entry_path
