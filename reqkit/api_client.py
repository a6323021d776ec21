from __future__ import annotations
import errno, http.client, json, logging, os, posixpath, re, select, socket, threading, time, urllib.error, urllib.parse, urllib.request
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from reqkit.config_loader import load_config
from reqkit.context import Context
from reqkit.errors import (
    DecodeError,
    ReadError,
    SerializationError,
    TransportBuildError,
    TransportError,
)
from reqkit.response import RawResponse

logger = logging.getLogger(__name__)

GET = "GET"
POST = "POST"
PUT = "PUT"
DELETE = "DELETE"
HEAD = "HEAD"
PATCH = "PATCH"
OPTIONS = "OPTIONS"

DEFAULT_TIMEOUT = 10.0

T = TypeVar("T")
Value = Union[str, int, float, bool]
Seconds = Union[int, float, timedelta]

_TOKEN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
_PATH_SAFE = "/$&+,:;=@"
# socket.settimeout(0) would switch to non-blocking mode
_MIN_SOCKET_TIMEOUT = 0.001


def format_value(value: Value) -> str:
    """
    Render a header or query value as text.

    str is kept, bool becomes "true"/"false", int and float use str().
    Anything else raises TypeError.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeError(
        f"unsupported value type {type(value).__name__!r}; expected str, int, float or bool"
    )


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _upsert(mapping: Dict[str, str], key: str, value: str) -> None:
    # header names are case-insensitive: drop other spellings of the same name
    for existing in [k for k in mapping if k.lower() == key.lower() and k != key]:
        del mapping[existing]
    mapping[key] = value


def _clean_join(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def build_url(base_url: str, path: str, query: Optional[Mapping[str, str]] = None) -> str:
    """
    Join base_url with path and optional query dict.

    The base path and `path` are joined segment-wise and cleaned, so duplicate
    slashes collapse and "." / ".." are resolved. A trailing "/" on `path` is
    kept. Query parameters already present on base_url are kept and `query`
    is added to them; the query string is re-encoded with sorted keys.

    Never raises: an unparseable base_url is used as a bare path and the
    resulting URL fails when the request is built.
    """
    try:
        parts = urllib.parse.urlsplit(base_url)
    except ValueError:
        parts = urllib.parse.SplitResult("", "", base_url, "", "")

    joined = _clean_join(urllib.parse.unquote(parts.path), path)
    if path.endswith("/") and not joined.endswith("/"):
        joined += "/"
    if parts.netloc and joined and not joined.startswith("/"):
        joined = "/" + joined

    pairs: List[Tuple[str, str]] = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    if query:
        pairs.extend(query.items())
    pairs.sort(key=lambda kv: kv[0])

    return urllib.parse.urlunsplit((
        parts.scheme,
        parts.netloc,
        urllib.parse.quote(joined, safe=_PATH_SAFE),
        urllib.parse.urlencode(pairs),
        parts.fragment,
    ))


#################
### Transport ###
#################

# how often a blocked connect re-checks for cancellation
_CONNECT_POLL_INTERVAL = 0.05


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass  # already closed by the peer


class _ConnectionTracker:
    """
    Aborts every socket of one dispatch when its context is cancelled.

    Sockets are connected here instead of by socket.create_connection, so a
    connect still in progress notices cancellation within one poll interval.
    Once connected, a duplicate of each socket is kept: shutting the duplicate
    down also breaks a TLS handshake or a blocked read on the original, even
    after ssl has taken the original socket object over.
    """

    def __init__(self, ctx: Context):
        self._handles: List[socket.socket] = []
        self._aborted = False
        self._lock = threading.Lock()
        self._unregister = ctx.on_cancel(self.abort)

    def create_connection(self, address, timeout=None, source_address=None) -> socket.socket:
        host, port = address
        numeric = isinstance(timeout, (int, float))
        deadline = time.monotonic() + timeout if numeric else None
        error: Optional[OSError] = None

        for family, type_, proto, _, sockaddr in socket.getaddrinfo(host, port, 0, socket.SOCK_STREAM):
            sock = socket.socket(family, type_, proto)
            try:
                if source_address:
                    sock.bind(source_address)
                self._connect(sock, sockaddr, deadline)
            except OSError as exc:
                sock.close()
                error = exc
                if self._aborted:
                    break
                continue
            sock.settimeout(timeout if numeric else socket.getdefaulttimeout())
            self._opened(sock)
            return sock

        raise error if error is not None else OSError(f"getaddrinfo returned nothing for {host!r}")

    def _connect(self, sock: socket.socket, sockaddr, deadline: Optional[float]) -> None:
        sock.setblocking(False)
        err = sock.connect_ex(sockaddr)
        if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY):
            raise OSError(err, os.strerror(err))
        while err != 0:
            if self._aborted:
                raise ConnectionAbortedError("connect cancelled")
            wait = _CONNECT_POLL_INTERVAL
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise socket.timeout("timed out")
                wait = min(wait, left)
            _, writable, _ = select.select([], [sock], [], wait)
            if writable:
                err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                if err:
                    raise OSError(err, os.strerror(err))
                return

    def _opened(self, sock: socket.socket) -> None:
        handle = sock.dup()
        with self._lock:
            self._handles.append(handle)
            aborted = self._aborted
        if aborted:
            _shutdown(handle)

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            handles = list(self._handles)
        for handle in handles:
            _shutdown(handle)

    def release(self) -> None:
        self._unregister()
        with self._lock:
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.close()


class _TrackedConnectionMixin:
    def __init__(self, host, *, tracker: _ConnectionTracker, **kwargs):
        super().__init__(host, **kwargs)
        # HTTPConnection.connect() goes through this instance attribute
        self._create_connection = tracker.create_connection


class _TrackedHTTPConnection(_TrackedConnectionMixin, http.client.HTTPConnection):
    pass


class _TrackedHTTPSConnection(_TrackedConnectionMixin, http.client.HTTPSConnection):
    pass


class _TrackedHTTPHandler(urllib.request.HTTPHandler):
    def __init__(self, tracker: _ConnectionTracker):
        super().__init__()
        self._tracker = tracker

    def http_open(self, req):
        return self.do_open(_TrackedHTTPConnection, req, tracker=self._tracker)


class _TrackedHTTPSHandler(urllib.request.HTTPSHandler):
    def __init__(self, tracker: _ConnectionTracker):
        super().__init__()
        self._tracker = tracker

    def https_open(self, req):
        return self.do_open(_TrackedHTTPSConnection, req, context=self._context, tracker=self._tracker)


class _PassthroughErrorProcessor(urllib.request.HTTPErrorProcessor):
    """Return non-2xx responses as responses; only redirects take the error path."""

    redirect_codes = {
        code for code in (301, 302, 303, 307, 308)
        if hasattr(urllib.request.HTTPRedirectHandler, f"http_error_{code}")
    }

    def http_response(self, request, response):
        if response.status in self.redirect_codes:
            return super().http_response(request, response)
        return response

    https_response = http_response


def _transport_error(ctx: Context, method: str, url: str, exc: BaseException) -> TransportError:
    cause = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    if ctx.cancelled:
        kind = "cancelled"
    elif isinstance(cause, (socket.timeout, TimeoutError)) or ctx.expired:
        kind = "timeout"
    else:
        kind = "connection"
    return TransportError(f"{method} {url} failed ({kind}): {cause}", kind=kind)


###############
### Request ###
###############

class Request:
    """
    Builder for a single HTTP call. Create it with Client.new_request().

    query, headers, body and timeout may be changed freely until dispatch;
    dispatch only reads them, so the same Request can be sent again.
    Not safe to mutate from another thread while it is being sent.
    """

    def __init__(
        self,
        base_url: str,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Seconds = DEFAULT_TIMEOUT,
    ):
        self._base_url = base_url
        self.method = method
        self.path = path
        self.query: Dict[str, str] = {}
        self.headers: Dict[str, str] = {}
        self.body: bytes = b""
        self.timeout = _seconds(timeout)
        for key, value in (headers or {}).items():
            self.set_header(key, value)

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_timeout(self, timeout: Seconds) -> None:
        self.timeout = _seconds(timeout)

    def set_header(self, key: str, value: Value) -> None:
        _upsert(self.headers, key, format_value(value))

    def set_query(self, key: str, value: Value) -> None:
        self.query[key] = format_value(value)

    def set_body(self, body: Union[bytes, bytearray, memoryview]) -> None:
        if not isinstance(body, (bytes, bytearray, memoryview)):
            raise TypeError(f"body must be bytes-like, not {type(body).__name__!r}")
        self.body = bytes(body)

    def set_json_body(self, value: Any) -> None:
        """
        Encode `value` as compact JSON, use it as the body and set
        Content-Type: application/json. Pydantic models, at any depth, are
        dumped with model_dump(mode="json").

        Raises SerializationError for cyclic structures, unsupported types
        and NaN/Infinity.
        """
        try:
            payload = json.dumps(
                value,
                default=_json_default,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"cannot encode JSON body: {exc}") from exc

        self.body = payload
        self.set_header("Content-Type", "application/json")

    def url(self) -> str:
        """The URL this request is sent to."""
        return build_url(self._base_url, self.path, self.query)

    def _build(self) -> urllib.request.Request:
        if not self.method or not _TOKEN.fullmatch(self.method):
            raise TransportBuildError(f"invalid method {self.method!r}")

        url = self.url()
        try:
            parts = urllib.parse.urlsplit(url)
            parts.port  # raises ValueError on a non-numeric port
        except ValueError as exc:
            raise TransportBuildError(f"invalid URL {url!r}: {exc}") from exc
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise TransportBuildError(f"unsupported URL {url!r}")

        for key, value in self.headers.items():
            if not _TOKEN.fullmatch(key) or "\r" in value or "\n" in value:
                raise TransportBuildError(f"invalid header {key!r}: {value!r}")

        try:
            req = urllib.request.Request(url, data=self.body or None, method=self.method)
        except ValueError as exc:
            raise TransportBuildError(f"cannot build request for {url!r}: {exc}") from exc

        for key, value in self.headers.items():
            req.add_header(key, value)
        return req

    def send_with_context(self, ctx: Context) -> RawResponse:
        """
        Send the request bound to `ctx` instead of this request's timeout.

        Returns the response with its body unread; the caller must close it.
        Raises TransportBuildError if the request cannot be built and
        TransportError (kind "connection", "timeout" or "cancelled") if the
        round trip fails. Non-2xx statuses are returned, not raised.

        Limitations: the remaining time is read once, when the opener is
        called, and becomes the per-operation socket timeout. Redirect hops
        reuse that value rather than the time left, and DNS resolution
        (getaddrinfo) is not bounded by the deadline or by cancellation.
        """
        outgoing = self._build()
        url = outgoing.full_url

        reason = ctx.err()
        if reason is not None:
            raise TransportError(f"{self.method} {url} not sent: context {reason}", kind=reason)

        tracker = _ConnectionTracker(ctx)
        opener = urllib.request.build_opener(
            _TrackedHTTPHandler(tracker),
            _TrackedHTTPSHandler(tracker),
            _PassthroughErrorProcessor(),
        )
        remaining = ctx.remaining()

        logger.debug("%s %s", self.method, url)
        try:
            if remaining is None:
                raw = opener.open(outgoing)
            else:
                raw = opener.open(outgoing, timeout=max(remaining, _MIN_SOCKET_TIMEOUT))
        except (OSError, http.client.HTTPException) as exc:
            tracker.release()
            if isinstance(exc, urllib.error.HTTPError):
                exc.close()
            error = _transport_error(ctx, self.method, url, exc)
            logger.debug("%s", error)
            raise error from exc

        logger.debug("Status %s for %s", raw.status, url)
        return RawResponse.from_http_response(raw, on_close=tracker.release)

    def send(self) -> RawResponse:
        """Send with a deadline of `timeout` seconds counted from this call."""
        with Context(self.timeout) as ctx:
            return self.send_with_context(ctx)

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.url()}>"


##############
### Client ###
##############

class Client:
    """
    Base URL plus default headers; factory for Requests.

    Example:
        api = Client("http://127.0.0.1:8000")
        api.add_default_header("Authorization", "Bearer t")
        req = api.new_request(GET, "/health")
        health, res = send_with_json_response(req, dict)
    """

    def __init__(self, base_url: str, timeout: Seconds = DEFAULT_TIMEOUT):
        self.base_url = base_url
        self.timeout = _seconds(timeout)
        # replaced on every write, never mutated in place
        self._default_headers: Dict[str, str] = {}

    @classmethod
    def from_config(cls, env_section: Optional[str] = None, path: str = "config.ini") -> "Client":
        """Build a Client from a config.ini section, see reqkit.config_loader."""
        cfg = load_config(env_section, path=path)
        client = cls(cfg.base_url, timeout=cfg.timeout)
        client.set_default_headers(cfg.headers)
        return client

    @property
    def default_headers(self) -> Mapping[str, str]:
        """Read-only snapshot of the current default headers."""
        return MappingProxyType(self._default_headers)

    def set_default_headers(self, headers: Mapping[str, Value]) -> None:
        fresh: Dict[str, str] = {}
        for key, value in headers.items():
            _upsert(fresh, key, format_value(value))
        self._default_headers = fresh

    def add_default_header(self, key: str, value: Value) -> None:
        fresh = dict(self._default_headers)
        _upsert(fresh, key, format_value(value))
        self._default_headers = fresh

    def new_request(self, method: str, path: str) -> Request:
        return Request(
            self.base_url,
            method,
            path,
            headers=self._default_headers,
            timeout=self.timeout,
        )

    def __repr__(self) -> str:
        return f"Client({self.base_url!r})"


def new_client(base_url: str) -> Client:
    """Construct a Client for `base_url` with no default headers."""
    return Client(base_url)


def send_with_json_response(request: Request, result_type: Type[T]) -> Tuple[T, RawResponse]:
    """
    Send `request` and decode its JSON body into `result_type`.

    `result_type` is anything pydantic can validate: a BaseModel subclass,
    a dataclass, dict, List[Item], and so on. Validation is strict: "5" or
    5.0 for an int field is a mismatch, ISO strings still parse as datetimes.

    Returns: (value, response). The response is already closed; its body
    bytes are available as response.content.
    Raises:
      - TransportBuildError / TransportError from send(); nothing is decoded
      - ReadError if the body cannot be read
      - DecodeError if the body is not JSON or does not match result_type
    Both ReadError and DecodeError carry the response as `.response`.

    Note: the whole body is read into memory before decoding.
    """
    adapter = TypeAdapter(result_type)
    res = request.send()

    with res:
        try:
            body = res.read()
        except (OSError, http.client.HTTPException) as exc:
            raise ReadError(f"reading response body from {res.url} failed: {exc}", response=res) from exc

        try:
            value = adapter.validate_json(body, strict=True)
        except ValidationError as exc:
            raise DecodeError(
                f"cannot decode response from {res.url} as {result_type!r}: {exc}",
                response=res,
                body=body,
                errors=exc.errors(),
            ) from exc

    return value, res
