from __future__ import annotations
from typing import Any, BinaryIO, Callable, Dict, Optional


class RawResponse:
    """
    Response as received from the transport, body left unread.

    The caller owns the body stream: read() drains it (once, the bytes are
    kept as `content`), close() releases it. close() is idempotent, and the
    object works as a context manager:

        with request.send() as res:
            print(res.status_code, res.read())
    """

    def __init__(
        self,
        status_code: int,
        reason: str,
        headers: Dict[str, str],
        url: str,
        stream: BinaryIO,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.status_code = status_code
        self.reason = reason
        self.headers = headers
        self.url = url
        self._stream = stream
        self._on_close = on_close
        self._content: Optional[bytes] = None
        self._closed = False

    @classmethod
    def from_http_response(cls, raw: Any, on_close: Optional[Callable[[], None]] = None) -> "RawResponse":
        """Wrap what urllib's opener returns (an http.client.HTTPResponse)."""
        return cls(
            status_code=raw.status,
            reason=raw.reason or "",
            headers=dict(raw.headers.items()),
            url=raw.geturl(),
            stream=raw,
            on_close=on_close,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content(self) -> Optional[bytes]:
        """Body bytes once read(), else None."""
        return self._content

    def read(self) -> bytes:
        if self._content is None:
            if self._closed:
                raise ValueError("I/O operation on closed response")
            self._content = self._stream.read()
        return self._content

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        finally:
            if self._on_close is not None:
                self._on_close()
                self._on_close = None

    def __enter__(self) -> "RawResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<RawResponse [{self.status_code}] {self.url}>"
