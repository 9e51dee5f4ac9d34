from io import BytesIO
from mockito import ANY, mock, unstub, verify, when
import requests
from requests.structures import CaseInsensitiveDict
from unittest import TestCase
from urllib3.exceptions import ReadTimeoutError

from performed.adapter import RequestsTransport
from performed.errors import HttpError, TransportFailure
from performed.model import request


class StalledRaw:
    """
    An urllib3 body whose read times out.
    """

    def __init__(self) -> None:
        self.closed = False

    def read(self, amt=None):
        raise ReadTimeoutError(None, 'http://example.com/slow', 'Read timed out.')

    def close(self) -> None:
        self.closed = True


class TestRequestsTransport(TestCase):
    def setUp(self):
        self.__session = mock(requests.Session)
        self.__sut = RequestsTransport(self.__session)

    def tearDown(self):
        unstub()

    def test_timeout_is_a_transport_failure(self):
        req = request('http://example.com/slow').finalize()
        when(self.__session).send(ANY, stream=True, timeout=1).thenRaise(
            requests.exceptions.ReadTimeout('Read timed out'))

        with self.assertRaises(TransportFailure) as context:
            self.__sut.send(req, 1)

        self.assertNotIsInstance(context.exception, HttpError)
        self.assertIsInstance(context.exception.cause, requests.exceptions.ReadTimeout)
        self.assertIs(req, context.exception.request)

    def test_error_statuses_are_returned(self):
        req = request('http://example.com/data').with_body_json({'a': 1}).finalize()
        requests_response = requests.Response()
        requests_response.status_code = 503
        requests_response.reason = 'Service Unavailable'
        requests_response.headers = CaseInsensitiveDict({'Content-Type': 'text/plain', 'Retry-After': '3'})
        requests_response.raw = BytesIO(b'try later')
        when(self.__session).send(ANY, stream=True, timeout=None).thenReturn(requests_response)

        response = self.__sut.send(req)

        self.assertEqual(503, response.status)
        self.assertEqual('Service Unavailable', response.reason)
        self.assertEqual('3', response.headers['retry-after'])
        self.assertEqual('try later', response.text)
        self.assertIs(req, response.request)

    def test_prepared_request(self):
        req = (request('http://example.com/data')
               .with_query(page=2)
               .with_headers({'X-Custom': 'yes'})
               .with_body_json({'a': 1})
               .finalize())
        sent = []

        def capture(prepared, stream, timeout):
            sent.append(prepared)
            response = requests.Response()
            response.status_code = 200
            response.raw = BytesIO(b'')
            return response
        when(self.__session).send(ANY, stream=True, timeout=None).thenAnswer(capture)

        self.__sut.send(req)

        prepared = sent[0]
        self.assertEqual('POST', prepared.method)
        self.assertEqual('http://example.com/data?page=2', prepared.url)
        self.assertEqual('yes', prepared.headers['X-Custom'])
        self.assertEqual('application/json', prepared.headers['Content-Type'])
        self.assertEqual(b'{"a":1}', prepared.body)
        verify(self.__session).send(ANY, stream=True, timeout=None)

    def test_timeout_while_reading_the_body_is_a_transport_failure(self):
        req = request('http://example.com/slow').finalize()
        requests_response = requests.Response()
        requests_response.status_code = 200
        requests_response.raw = StalledRaw()
        when(self.__session).send(ANY, stream=True, timeout=1).thenReturn(requests_response)
        response = self.__sut.send(req, 1)

        with self.assertRaises(TransportFailure) as context:
            response.content

        self.assertIsInstance(context.exception.cause, ReadTimeoutError)
        self.assertIs(req, context.exception.request)
        self.assertTrue(requests_response.raw.closed)
