from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from io import RawIOBase, UnsupportedOperation
import math
from typing import BinaryIO, Callable, Optional, Sequence


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an HTTP-date header value into an aware datetime.

    @return
      The parsed date, or `None` if `value` is missing or malformed.
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_delay(value: Optional[str], now: float) -> Optional[float]:
    """
    Interpret a `Retry-After` style value: either delta seconds or an HTTP-date.

    @param now
      The current time as a UNIX timestamp, used to turn a date into a delay.
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if math.isfinite(seconds) and seconds >= 0:
            return seconds
        return None

    target = parse_http_date(value)
    if target is None:
        return None
    return max(0.0, target.timestamp() - now)


def format_http_date(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.strftime('%a, %d %b %Y %H:%M:%S GMT')


class Tee(RawIOBase):
    """
    Copies everything read from `reader` into `writer`.

    `on_complete` is called once the reader reports EOF, i.e., only when the
    whole stream has been consumed. `on_abandon` is called instead if the tee
    is closed before that.
    """

    def __init__(self, reader: BinaryIO, writer: BinaryIO, on_complete: Callable[[], None],
                 on_abandon: Optional[Callable[[], None]] = None) -> None:
        super().__init__()
        self.__reader = reader
        self.__writer = writer
        self.__on_complete = on_complete
        self.__on_abandon = on_abandon
        self.__completed = False
        self.__abandoned = False

    def _write_chunk(self, chunk: bytes) -> bytes:
        if self.__completed:
            return chunk
        if chunk:
            self.__writer.write(chunk)
        else:
            # Indicates EOF was reached in the reader.
            self.__completed = True
            self.__writer.close()
            self.__on_complete()
        return chunk

    # region IOBase methods

    def close(self) -> None:
        self.__reader.close()
        if not self.__writer.closed:
            self.__writer.close()
        if not self.__completed and not self.__abandoned:
            self.__abandoned = True
            if self.__on_abandon is not None:
                self.__on_abandon()
        super().close()

    @property
    def closed(self) -> bool:
        return self.__reader.closed

    def fileno(self) -> int:
        raise OSError()

    def flush(self) -> None:
        if not self.__writer.closed:
            self.__writer.flush()

    def isatty(self) -> bool:
        return False

    def readable(self) -> bool:
        return True

    def readline(self, size=-1) -> bytes:
        return self._write_chunk(self.__reader.readline(size))

    def readlines(self, hint=-1) -> Sequence[bytes]:
        lines = []
        for line in iter(self.readline, b''):
            lines.append(line)
        return lines

    def seekable(self) -> bool:
        return False

    # endregion

    # region RawIOBase methods

    def read(self, size=-1):
        return self._write_chunk(self.__reader.read(size))

    def readall(self):
        chunks = []
        for chunk in iter(lambda: self.read(64 * 1024), b''):
            chunks.append(chunk)
        return b''.join(chunks)

    def readinto(self, buffer):
        # Just because I don't feel like figuring how to tee these.
        raise UnsupportedOperation()

    def write(self, b):
        raise UnsupportedOperation()

    # endregion
