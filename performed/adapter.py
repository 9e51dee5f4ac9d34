from abc import ABC, abstractmethod
import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
import urllib3

from .errors import TransportFailure
from .model import Headers, Request, Response, ResponseBody


logger = logging.getLogger(__name__)


class Transport(ABC):
    """
    Sends a single finalized request over the network.

    A transport never interprets status codes: any HTTP response, including
    4xx and 5xx ones, is returned. Only failures to obtain a response at all
    are raised, as `TransportFailure`.
    """

    @abstractmethod
    def send(self, request: Request, timeout: Optional[float] = None) -> Response:
        """
        @param request
          A request that has been through `Request.finalize()`.
        @param timeout
          Seconds to wait for the connection and for each read, or `None`.
        @throws TransportFailure
          If no response could be obtained.
        """

    def close(self) -> None:
        """
        Close any resources associated with the transport.
        """


class RequestsTransport(Transport):
    """
    A transport backed by a `requests.Session`.

    Redirects are followed by `requests`; response bodies are streamed from
    the underlying urllib3 response.
    """

    def __init__(self, session: Optional[requests.Session] = None, pool_size: int = 10) -> None:
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.__session = session

    def send(self, request: Request, timeout: Optional[float] = None) -> Response:
        prepared = requests.Request(method=request.effective_method,
                                    url=request.url.build(),
                                    headers=request.headers.to_dict(),
                                    data=request.body_bytes).prepare()

        logger.info('Sending {} {}'.format(prepared.method, prepared.url))
        try:
            requests_response = self.__session.send(prepared, stream=True, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.info('Transport failure for {} {}: {}'.format(prepared.method, prepared.url, e))
            raise TransportFailure(request, e) from e

        raw = requests_response.raw
        if hasattr(raw, 'decode_content'):
            raw.decode_content = True
        return Response(status=requests_response.status_code,
                        reason=requests_response.reason or '',
                        headers=Headers(requests_response.headers.items()),
                        body=ResponseBody(_TransportReader(raw, request) if raw is not None else None),
                        request=request)

    def close(self) -> None:
        self.__session.close()


class _TransportReader:
    """
    Reads a response body from the network, raising `TransportFailure` if the
    connection fails part way through.
    """

    def __init__(self, raw, request: Request) -> None:
        self.__raw = raw
        self.__request = request

    def read(self, size=-1) -> bytes:
        try:
            return self.__raw.read(None if size is None or size < 0 else size)
        except (urllib3.exceptions.HTTPError, requests.exceptions.RequestException) as e:
            logger.info('Transport failure while reading {}: {}'.format(self.__request.url.build(), e))
            raise TransportFailure(self.__request, e) from e

    @property
    def closed(self) -> bool:
        return self.__raw.closed

    def close(self) -> None:
        self.__raw.close()
