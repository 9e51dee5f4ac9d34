import base64
import hashlib
from unittest import TestCase
from urllib.parse import parse_qsl, urlsplit

import jwt

from performed import flows
from performed.errors import AuthError
from performed.oauth import OAuthClient, TokenExchange

from fakes import FakeClock, form_of, json_response


TOKEN_URL = 'https://auth.example.com/token'
SIGNING_KEY = 'a-signing-key-that-is-long-enough-for-hs256'


class RecordingEndpoint:
    """
    Replies with `(status, payload)` pairs in turn, repeating the last one.
    """

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.received = []

    def __call__(self, token_request):
        self.received.append(token_request)
        status, payload = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return json_response(status, payload)

    def form(self, index=-1) -> dict:
        return form_of(self.received[index])


class FlowTestCase(TestCase):
    def setUp(self):
        self.clock = FakeClock(start=1000.0)
        self.client = OAuthClient('id', TOKEN_URL, secret='s3cret',
                                  authorization_url='https://auth.example.com/authorize',
                                  device_url='https://auth.example.com/device')

    def exchange(self, endpoint) -> TokenExchange:
        return TokenExchange(endpoint, self.clock.time, self.clock.sleep)


class TestSimpleGrants(FlowTestCase):
    def test_client_credentials(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))

        token = flows.client_credentials(self.client, {'scope': ['read', 'write'], 'token_params': {'audience': 'x'}},
                                         self.exchange(endpoint))

        self.assertEqual('abc', token.access_token)
        self.assertEqual({'grant_type': 'client_credentials', 'scope': 'read write', 'audience': 'x',
                          'client_id': 'id', 'client_secret': 's3cret'}, endpoint.form())

    def test_password(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))

        flows.password(self.client, {'username': 'user', 'password': lambda: 'hunter2'}, self.exchange(endpoint))

        form = endpoint.form()
        self.assertEqual('password', form['grant_type'])
        self.assertEqual('user', form['username'])
        self.assertEqual('hunter2', form['password'])

    def test_refresh_keeps_the_given_refresh_token(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))

        token = flows.refresh(self.client, {'refresh_token': 'long-lived'}, self.exchange(endpoint))

        self.assertEqual('long-lived', token.refresh_token)
        self.assertEqual('refresh_token', endpoint.form()['grant_type'])

    def test_jwt_bearer(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))
        params = {
            'claims': {'iss': 'me', 'aud': TOKEN_URL},
            'key': SIGNING_KEY,
            'algorithm': 'HS256',
        }

        flows.jwt_bearer(self.client, params, self.exchange(endpoint))

        form = endpoint.form()
        self.assertEqual(flows.JWT_BEARER_GRANT, form['grant_type'])
        claims = jwt.decode(form['assertion'], SIGNING_KEY, algorithms=['HS256'], audience=TOKEN_URL,
                            options={'verify_exp': False})
        self.assertEqual('me', claims['iss'])
        self.assertEqual(1000, claims['iat'])
        self.assertEqual(1300, claims['exp'])


class TestAuthCode(FlowTestCase):
    def test_exchanges_the_code_with_pkce(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))
        visited = []

        def receive_code(url):
            visited.append(url)
            query = dict(parse_qsl(urlsplit(url).query))
            return {'code': 'the-code', 'state': query['state']}

        flows.auth_code(self.client, {'receive_code': receive_code, 'scope': 'read'}, self.exchange(endpoint))

        query = dict(parse_qsl(urlsplit(visited[0]).query))
        self.assertEqual('code', query['response_type'])
        self.assertEqual('id', query['client_id'])
        self.assertEqual('S256', query['code_challenge_method'])

        form = endpoint.form()
        self.assertEqual('authorization_code', form['grant_type'])
        self.assertEqual('the-code', form['code'])
        digest = hashlib.sha256(form['code_verifier'].encode('ascii')).digest()
        self.assertEqual(query['code_challenge'], base64.urlsafe_b64encode(digest).decode('ascii').rstrip('='))

    def test_state_mismatch_is_rejected(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))

        with self.assertRaises(AuthError) as context:
            flows.auth_code(self.client, {'receive_code': lambda url: {'code': 'c', 'state': 'forged'}},
                            self.exchange(endpoint))

        self.assertEqual('invalid_state', context.exception.error)
        self.assertEqual([], endpoint.received)

    def test_plain_code_without_pkce(self):
        endpoint = RecordingEndpoint((200, {'access_token': 'abc'}))

        flows.auth_code(self.client, {'receive_code': lambda url: 'the-code', 'pkce': False}, self.exchange(endpoint))

        self.assertNotIn('code_verifier', endpoint.form())


class TestDevice(FlowTestCase):
    AUTHORIZATION = {
        'device_code': 'device-code',
        'user_code': 'ABCD-EFGH',
        'verification_uri': 'https://auth.example.com/activate',
        'interval': 5,
        'expires_in': 600,
    }

    def test_polls_until_approved(self):
        prompts = []
        endpoint = RecordingEndpoint((200, self.AUTHORIZATION),
                                     (400, {'error': 'authorization_pending'}),
                                     (400, {'error': 'slow_down'}),
                                     (200, {'access_token': 'abc'}))

        token = flows.device(self.client, {'prompt': lambda code, uri: prompts.append((code, uri))},
                             self.exchange(endpoint))

        self.assertEqual('abc', token.access_token)
        self.assertEqual([('ABCD-EFGH', 'https://auth.example.com/activate')], prompts)
        self.assertEqual([5.0, 5.0, 10.0], self.clock.sleeps)
        self.assertEqual(flows.DEVICE_CODE_GRANT, endpoint.form()['grant_type'])
        self.assertEqual('device-code', endpoint.form()['device_code'])

    def test_denial_is_raised(self):
        endpoint = RecordingEndpoint((200, self.AUTHORIZATION), (400, {'error': 'access_denied'}))

        with self.assertRaises(AuthError) as context:
            flows.device(self.client, {'prompt': lambda code, uri: None}, self.exchange(endpoint))

        self.assertEqual('access_denied', context.exception.error)

    def test_gives_up_when_the_code_expires(self):
        authorization = dict(self.AUTHORIZATION, expires_in=12)
        endpoint = RecordingEndpoint((200, authorization), (400, {'error': 'authorization_pending'}))

        with self.assertRaises(AuthError) as context:
            flows.device(self.client, {'prompt': lambda code, uri: None}, self.exchange(endpoint))

        self.assertEqual('expired_token', context.exception.error)
        self.assertEqual([5.0, 5.0, 5.0], self.clock.sleeps)

    def test_authorization_without_a_device_code_is_rejected(self):
        authorization = {key: value for key, value in self.AUTHORIZATION.items() if key != 'device_code'}
        endpoint = RecordingEndpoint((200, authorization))
        prompts = []

        with self.assertRaises(AuthError) as context:
            flows.device(self.client, {'prompt': lambda code, uri: prompts.append(code)}, self.exchange(endpoint))

        self.assertEqual('invalid_response', context.exception.error)
        self.assertEqual([], prompts)
        self.assertEqual(1, len(endpoint.received))
