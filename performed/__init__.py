"""
Declarative HTTP requests performed with retries, throttling, caching and OAuth.
"""

from .adapter import RequestsTransport, Transport
from .context import Context, get_context, reset_context, set_context
from .errors import AuthError, CacheError, HttpError, InvalidRequest, PerformError, TransportFailure
from .model import __version__, Headers, Request, Response, Url, request
from .oauth import OAuthClient, Token, oauth
from .perform import DryRun, dry_run, last_request, last_response, perform, stream, throttle_status

__all__ = [
    'AuthError', 'CacheError', 'Context', 'DryRun', 'Headers', 'HttpError', 'InvalidRequest', 'OAuthClient',
    'PerformError', 'Request', 'RequestsTransport', 'Response', 'Token', 'Transport', 'TransportFailure', 'Url',
    '__version__', 'dry_run', 'get_context', 'last_request', 'last_response', 'oauth', 'perform', 'request',
    'reset_context', 'set_context', 'stream', 'throttle_status',
]
