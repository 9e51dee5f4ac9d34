"""
Stand-ins for the network and for time, shared by the unit tests.
"""

from io import BytesIO
import json
from typing import Callable, List, Optional
from urllib.parse import parse_qsl

from performed.adapter import Transport
from performed.context import Context
from performed.errors import TransportFailure
from performed.model import Headers, Request, Response, ResponseBody


class FakeClock:
    def __init__(self, start: float = 1000000.0) -> None:
        self.current = start
        self.sleeps = []  # type: List[float]

    def time(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


def make_response(status: int = 200, headers=None, body: bytes = b'', reason: str = 'OK',
                  request: Optional[Request] = None, stream=None) -> Response:
    """
    `stream`, when given, is read instead of `body`.
    """
    stream = stream if stream is not None else BytesIO(body)
    return Response(status=status, reason=reason, headers=Headers(headers), body=ResponseBody(stream),
                    request=request)


class StallingStream:
    """
    A response body whose connection times out before any bytes arrive.
    """

    def __init__(self, request: Request) -> None:
        self.__request = request
        self.closed = False

    def read(self, size=-1) -> bytes:
        raise TransportFailure(self.__request, TimeoutError('Read timed out.'))

    def close(self) -> None:
        self.closed = True


def json_response(status: int, data, headers=None) -> Response:
    merged = {'Content-Type': 'application/json'}
    merged.update(headers or {})
    return make_response(status, merged, json.dumps(data).encode('utf-8'))


def form_of(request: Request) -> dict:
    return dict(parse_qsl(request.body_bytes.decode('ascii'), keep_blank_values=True))


class FakeTransport(Transport):
    """
    Answers requests with `handler(request)`, which returns a `Response` or
    raises an exception to simulate a transport failure.
    """

    def __init__(self, handler: Callable[[Request], Response]) -> None:
        self.__handler = handler
        self.sent = []  # type: List[Request]
        self.timeouts = []  # type: List[Optional[float]]

    @classmethod
    def replying(cls, *replies) -> 'FakeTransport':
        """
        Reply with each of `replies` in turn, repeating the last one. A reply is
        a `(status, headers, body)` tuple or an exception instance.
        """
        queue = list(replies)

        def handler(request: Request) -> Response:
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(reply, BaseException):
                raise reply
            status, headers, body = reply
            return make_response(status, headers, body)
        return cls(handler)

    def send(self, request: Request, timeout: Optional[float] = None) -> Response:
        self.sent.append(request)
        self.timeouts.append(timeout)
        try:
            response = self.__handler(request)
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(request, e) from e
        return response.with_request(request)


def fake_context(transport: Transport, clock: Optional[FakeClock] = None) -> Context:
    clock = clock or FakeClock()
    return Context(transport=transport, clock=clock.time, wall_clock=clock.time, sleep=clock.sleep)
