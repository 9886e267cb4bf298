"""Request introspection pipeline for the echo server.

Every request goes through the same steps: headers are normalized, the
body is read up to the configured limit, classified (JSON, plain text or
nothing at all) and the result is assembled into a JSON envelope.  The
functions here know nothing about sockets or threads; the transport in
echo_http hands them plain values and a body stream.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, assert_never

__version__ = "0.1.0"

DEFAULT_MAX_BODY_SIZE = 64 * 1024
DEFAULT_TAG = "echo-server"
READ_CHUNK_SIZE = 8192
MAX_CHUNK_LINE = 1024
CHUNK_SIZE = re.compile(rb"[0-9A-Fa-f]+")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EchoConfig:
    """Read-only settings shared by every request handler.

    Built once at startup and never mutated afterwards, so handler
    threads read it without locking.
    """
    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    tag: str = DEFAULT_TAG

    def __post_init__(self):
        if self.max_body_size <= 0:
            raise ValueError(f"max_body_size must be positive, got {self.max_body_size}")


class EchoError(Exception):
    """Base class for failures that end a single request."""


class BodyTooLarge(EchoError):
    def __init__(self, limit: int):
        super().__init__(f"request body exceeds {limit} bytes")
        self.limit = limit


class BodyReadError(EchoError):
    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


class InvalidJson(EchoError):
    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


# Closed set of failures; error_response() must cover each one.
EchoFailure = BodyTooLarge | BodyReadError | InvalidJson


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---- headers ----------------------------------------------------------------

def decode_text(raw: bytes) -> tuple[str, bool]:
    """Decode UTF-8 strictly, falling back to replacement characters.

    Returns the text and whether the lossy fallback was needed.
    """
    try:
        return raw.decode("utf-8"), False
    except UnicodeDecodeError:
        return raw.decode("utf-8", errors="replace"), True


def normalize_headers(pairs: Iterable[tuple[str, bytes]]) -> dict[str, str]:
    """Collapse raw (name, value) pairs into a name -> value mapping.

    Names are lower-cased. A repeated name keeps its last value.
    """
    headers = {}
    for name, raw in pairs:
        key = name.lower()
        value, lossy = decode_text(raw)
        if lossy:
            logger.warning("Non-UTF8 header value for key: %s", key)
        headers[key] = value
    return headers


# ---- body streams -----------------------------------------------------------

class LengthBody:
    """Body framed by Content-Length: yields exactly `length` bytes."""

    def __init__(self, rfile, length: int):
        self.rfile = rfile
        self.length = length
        self.remaining = length

    def read(self, size: int) -> bytes:
        if self.remaining == 0:
            return b""
        data = self.rfile.read(min(size, self.remaining))
        if not data:
            raise BodyReadError(
                f"connection closed after {self.length - self.remaining} "
                f"of {self.length} body bytes")
        self.remaining -= len(data)
        return data


class ChunkedBody:
    """Body framed by Transfer-Encoding: chunked, decoded on the fly."""

    length = None

    def __init__(self, rfile):
        self.rfile = rfile
        self.chunk_left = 0
        self.done = False

    def _readline(self) -> bytes:
        line = self.rfile.readline(MAX_CHUNK_LINE + 1)
        if not line:
            raise BodyReadError("connection closed inside chunked body")
        if len(line) > MAX_CHUNK_LINE:
            raise BodyReadError("chunk header line too long")
        return line

    def _next_chunk(self):
        line = self._readline()
        size_text, ext, _ = line.rstrip(b"\r\n").partition(b";")
        if ext:
            # whitespace is allowed only before a chunk extension
            size_text = size_text.rstrip(b" \t")
        if not CHUNK_SIZE.fullmatch(size_text):
            raise BodyReadError(f"invalid chunk size: {size_text!r}")
        size = int(size_text, 16)
        if size == 0:
            # trailer section ends with an empty line
            while self._readline() not in (b"\r\n", b"\n"):
                pass
            self.done = True
        self.chunk_left = size

    def _end_chunk(self):
        if self.rfile.read(2) != b"\r\n":
            raise BodyReadError("missing CRLF after chunk data")

    def read(self, size: int) -> bytes:
        if self.done:
            return b""
        if self.chunk_left == 0:
            self._next_chunk()
            if self.done:
                return b""
        data = self.rfile.read(min(size, self.chunk_left))
        if not data:
            raise BodyReadError("connection closed inside chunked body")
        self.chunk_left -= len(data)
        if self.chunk_left == 0:
            self._end_chunk()
        return data


class EmptyBody:
    length = 0

    def read(self, size: int) -> bytes:
        return b""


def open_body(rfile, content_length: Optional[str], transfer_encoding: Optional[str]):
    """Pick the body framing announced by the request headers."""
    if transfer_encoding is not None:
        codings = [c.strip().lower() for c in transfer_encoding.split(",") if c.strip()]
        if codings != ["chunked"]:
            raise BodyReadError(f"unsupported transfer encoding: {transfer_encoding}")
        return ChunkedBody(rfile)
    if content_length is None:
        return EmptyBody()
    try:
        length = int(content_length.strip())
    except ValueError:
        raise BodyReadError(f"invalid Content-Length: {content_length!r}") from None
    if length < 0:
        raise BodyReadError(f"invalid Content-Length: {content_length!r}")
    return LengthBody(rfile, length)


def read_body(stream, max_body_size: int) -> bytes:
    """Drain `stream`, never holding more than max_body_size + 1 bytes.

    Raises BodyTooLarge as soon as the limit is passed (or up front when
    the stream announces its length) and BodyReadError for any other I/O
    failure.
    """
    declared = getattr(stream, "length", None)
    if declared is not None and declared > max_body_size:
        raise BodyTooLarge(max_body_size)

    buf = bytearray()
    try:
        while True:
            chunk = stream.read(min(READ_CHUNK_SIZE, max_body_size + 1 - len(buf)))
            if not chunk:
                break
            buf += chunk
            if len(buf) > max_body_size:
                raise BodyTooLarge(max_body_size)
    except EchoError:
        raise
    except (OSError, ValueError) as e:
        raise BodyReadError(str(e) or type(e).__name__) from e
    return bytes(buf)


# ---- body classification ----------------------------------------------------

def _reject_constant(name):
    raise ValueError(f"{name} is not valid JSON")


def _check_encodable(value):
    # json.loads lets "\ud800" escapes through as lone surrogates, which
    # cannot be written back out as UTF-8.
    try:
        encode_json(value)
    except UnicodeEncodeError:
        raise ValueError("lone surrogate escape in string") from None


def looks_like_json(text: str) -> bool:
    trimmed = text.strip()
    return ((trimmed.startswith("{") and trimmed.endswith("}"))
            or (trimmed.startswith("[") and trimmed.endswith("]")))


def parse_body(raw: bytes) -> Any:
    """Classify a request body.

    Empty input gives None, valid JSON gives the decoded value, anything
    else gives the text itself, unless the text is bracketed like a JSON
    object or array, in which case InvalidJson is raised.
    """
    if not raw:
        return None

    text, _ = decode_text(raw)
    try:
        value = json.loads(text, parse_constant=_reject_constant)
        _check_encodable(value)
        return value
    except (ValueError, RecursionError) as e:
        if looks_like_json(text):
            logger.warning("Body looks like JSON but failed to parse: %s", e)
            raise InvalidJson(str(e)) from e
        return text


# ---- responses --------------------------------------------------------------

def build_echo(method: str, path: str, query: dict[str, str], headers: dict[str, str],
               body: Any, config: EchoConfig, now: Optional[datetime] = None) -> dict:
    if now is None:
        now = _now()
    return {
        "method": method,
        "path": path,
        "headers": headers,
        "query": query,
        "body": body,
        "server_tag": config.tag,
        "server_version": __version__,
        "timestamp": now.isoformat(),
        "timestamp_unix": int(now.timestamp()),
    }


def error_response(error: EchoFailure) -> tuple[int, dict]:
    """Map a pipeline failure to an HTTP status and error envelope."""
    match error:
        case BodyTooLarge():
            status, message, details = 413, "Request body too large", None
        case BodyReadError(details=details):
            status, message = 400, "Failed to read request body"
        case InvalidJson(details=details):
            status, message = 400, "Invalid JSON in request body"
        case _:
            assert_never(error)

    envelope = {"error": message, "timestamp": _now().isoformat()}
    if details is not None:
        envelope["details"] = details
    return status, envelope


def encode_json(document) -> bytes:
    return json.dumps(document, sort_keys=True, ensure_ascii=False).encode("utf-8")


def handle(method: str, path: str, query: dict[str, str], raw_headers: Iterable[tuple[str, bytes]],
           rfile, config: EchoConfig) -> tuple[int, dict]:
    """Run the whole pipeline for one request and return (status, document).

    `rfile` is the connection's input stream positioned at the start of
    the body; framing is taken from the request headers.
    """
    headers = normalize_headers(raw_headers)
    try:
        stream = open_body(rfile, headers.get("content-length"),
                           headers.get("transfer-encoding"))
        raw = read_body(stream, config.max_body_size)
        body = parse_body(raw)
    except EchoError as e:
        if isinstance(e, BodyReadError):
            logger.error("Failed to read request body: %s", e)
        return error_response(e)
    return 200, build_echo(method, path, query, headers, body, config)
