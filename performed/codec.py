"""
Body codecs: turn structured payloads into bytes and back.

The request model only ever holds a codec and the value to encode; encoding
happens once, when a request is finalized for sending.
"""

from abc import ABC, abstractmethod
import json
from typing import Any, Optional, Tuple
from urllib.parse import parse_qsl, urlencode


class BodyCodec(ABC):
    content_type: str = 'application/octet-stream'

    @abstractmethod
    def encode(self, value: Any) -> Tuple[bytes, str]:
        """
        Encode `value` for transmission.

        @return
          The encoded bytes and the content type describing them.
        """

    @abstractmethod
    def decode(self, data: bytes, content_type: Optional[str] = None) -> Any:
        """
        Decode a received payload.
        """


class JsonCodec(BodyCodec):
    content_type = 'application/json'

    def encode(self, value: Any) -> Tuple[bytes, str]:
        return json.dumps(value, separators=(',', ':')).encode('utf-8'), self.content_type

    def decode(self, data: bytes, content_type: Optional[str] = None) -> Any:
        return json.loads(data.decode(_charset(content_type)))


class FormCodec(BodyCodec):
    content_type = 'application/x-www-form-urlencoded'

    def encode(self, value: Any) -> Tuple[bytes, str]:
        items = value.items() if hasattr(value, 'items') else value
        pairs = [(key, item) for key, item in items if item is not None]
        return urlencode(pairs).encode('ascii'), self.content_type

    def decode(self, data: bytes, content_type: Optional[str] = None) -> Any:
        return dict(parse_qsl(data.decode(_charset(content_type)), keep_blank_values=True))


def _charset(content_type: Optional[str]) -> str:
    if content_type:
        for parameter in content_type.split(';')[1:]:
            key, _, value = parameter.strip().partition('=')
            if key.lower() == 'charset' and value:
                return value.strip('"')
    return 'utf-8'


def media_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ''
    return content_type.split(';', 1)[0].strip().lower()


def charset(content_type: Optional[str]) -> str:
    return _charset(content_type)


JSON = JsonCodec()
FORM = FormCodec()
