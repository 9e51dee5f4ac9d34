"""
OAuth flows.

Every flow has the signature `flow(client, params, exchange) -> Token` and is
selected per request with `performed.oauth.oauth(client, flow, **params)`.
Flows differ only in what they send to the token endpoint.
"""

import base64
import hashlib
import logging
import secrets
from typing import Any, Callable, Mapping, Optional, Tuple

import jwt

from .errors import AuthError
from .model import request as new_request
from .oauth import OAuthClient, Token, TokenExchange, scope_string


logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = 'urn:ietf:params:oauth:grant-type:jwt-bearer'
DEVICE_CODE_GRANT = 'urn:ietf:params:oauth:grant-type:device_code'
DEFAULT_JWT_LIFETIME = 300
DEFAULT_DEVICE_INTERVAL = 5
SLOW_DOWN_INCREMENT = 5


def client_credentials(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    Parameters: `scope`, and any extra `token_params`.
    """
    grant = {'grant_type': 'client_credentials', 'scope': scope_string(params.get('scope'))}
    grant.update(params.get('token_params') or {})
    return exchange.request_token(client, grant)


def password(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    Resource owner password grant. Parameters: `username`, `password` (a string
    or a callable revealing it), `scope`.
    """
    secret = params['password']
    grant = {
        'grant_type': 'password',
        'username': params['username'],
        'password': secret() if callable(secret) else secret,
        'scope': scope_string(params.get('scope')),
    }
    return exchange.request_token(client, grant)


def refresh(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    Exchange a long-lived refresh token obtained elsewhere. Parameters:
    `refresh_token`, `scope`.
    """
    token = exchange.refresh(client, params['refresh_token'], params.get('scope'))
    if token.refresh_token is None:
        token = Token(access_token=token.access_token, token_type=token.token_type,
                      refresh_token=params['refresh_token'], expires_at=token.expires_at,
                      scope=token.scope, extra=token.extra)
    return token


def jwt_bearer(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    JWT bearer grant (RFC 7523).

    Parameters: `claims` (iss, sub, aud, ...), `key` (signing key, or a callable
    revealing it), `algorithm` (default RS256), `headers`, `scope`. `iat` and
    `exp` default to now and five minutes from now.
    """
    now = int(exchange.clock())
    claims = {'iat': now, 'exp': now + DEFAULT_JWT_LIFETIME}
    claims.update(params.get('claims') or {})
    key = params['key']
    assertion = jwt.encode(claims,
                           key() if callable(key) else key,
                           algorithm=params.get('algorithm', 'RS256'),
                           headers=params.get('headers'))
    grant = {
        'grant_type': JWT_BEARER_GRANT,
        'assertion': assertion,
        'scope': scope_string(params.get('scope')),
    }
    return exchange.request_token(client, grant)


def pkce_pair() -> Tuple[str, str]:
    """
    A PKCE code verifier and its S256 challenge.
    """
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    challenge = base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')
    return verifier, challenge


def authorization_url(client: OAuthClient, redirect_uri: str, scope: Optional[str], state: str,
                      challenge: Optional[str] = None, auth_params: Optional[Mapping[str, Any]] = None) -> str:
    if client.authorization_url is None:
        raise ValueError('Client {} has no authorization URL'.format(client.id))
    query = {
        'response_type': 'code',
        'client_id': client.id,
        'redirect_uri': redirect_uri,
        'scope': scope,
        'state': state,
    }
    if challenge is not None:
        query['code_challenge'] = challenge
        query['code_challenge_method'] = 'S256'
    query.update(auth_params or {})
    return new_request(client.authorization_url).with_query(query).url.build()


def auth_code(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    Authorization code grant.

    The user-facing part is delegated to `receive_code(url)`: it must send the
    user to `url` and return what the redirect delivered, either the code
    itself or a mapping with `code` and `state`.

    Parameters: `receive_code`, `redirect_uri`, `scope`, `pkce` (default
    True), `auth_params`, `token_params`.
    """
    receive_code = params['receive_code']  # type: Callable[[str], Any]
    redirect_uri = params.get('redirect_uri', 'http://localhost:1410/')
    state = secrets.token_urlsafe(16)
    verifier, challenge = pkce_pair() if params.get('pkce', True) else (None, None)

    url = authorization_url(client, redirect_uri, scope_string(params.get('scope')), state, challenge,
                            params.get('auth_params'))
    logger.info('Waiting for an authorization code for client {}.'.format(client.id))
    received = receive_code(url)

    if isinstance(received, Mapping):
        if 'error' in received:
            raise AuthError(new_request(url), received['error'], received.get('error_description'),
                            received.get('error_uri'))
        if received.get('state') != state:
            raise AuthError(new_request(url), 'invalid_state', 'The authorization server returned a different state')
        code = received.get('code')
    else:
        code = received
    if not code:
        raise AuthError(new_request(url), 'invalid_request', 'No authorization code was received')

    grant = {
        'grant_type': 'authorization_code',
        'code': code,
        'redirect_uri': redirect_uri,
        'code_verifier': verifier,
    }
    grant.update(params.get('token_params') or {})
    return exchange.request_token(client, grant)


def device(client: OAuthClient, params: Mapping[str, Any], exchange: TokenExchange) -> Token:
    """
    Device authorization grant (RFC 8628).

    `prompt(user_code, verification_uri)` tells the user what to do; by
    default the instructions are logged. The token endpoint is then polled
    until the user approves, denies, or the device code expires.

    Parameters: `scope`, `prompt`, `auth_params`.
    """
    if client.device_url is None:
        raise ValueError('Client {} has no device authorization URL'.format(client.id))
    fields = {'scope': scope_string(params.get('scope'))}
    fields.update(params.get('auth_params') or {})
    authorization = exchange.post(client, client.device_url, fields)

    device_code = authorization.get('device_code')
    if not device_code:
        raise AuthError(new_request(client.device_url), 'invalid_response',
                        'The device authorization response has no device_code')
    verification_uri = authorization.get('verification_uri_complete') or authorization.get('verification_uri') \
        or authorization.get('verification_url')
    prompt = params.get('prompt') or _log_prompt
    prompt(authorization.get('user_code'), verification_uri)

    interval = float(authorization.get('interval') or DEFAULT_DEVICE_INTERVAL)
    expires_in = authorization.get('expires_in')
    deadline = exchange.clock() + float(expires_in) if expires_in is not None else None

    while deadline is None or exchange.clock() < deadline:
        exchange.sleep(interval)
        try:
            return exchange.request_token(client, {'grant_type': DEVICE_CODE_GRANT, 'device_code': device_code})
        except AuthError as e:
            if e.error == 'authorization_pending':
                continue
            if e.error == 'slow_down':
                interval += SLOW_DOWN_INCREMENT
                continue
            raise
    raise AuthError(new_request(client.token_url), 'expired_token', 'The device code expired before it was approved')


def _log_prompt(user_code: Optional[str], verification_uri: Optional[str]) -> None:
    logger.warning('Visit {} and enter the code {}'.format(verification_uri, user_code))
