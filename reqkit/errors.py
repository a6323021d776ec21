from __future__ import annotations
from typing import Any, List, Literal, Optional

TransportErrorKind = Literal["connection", "timeout", "cancelled"]


class ReqkitError(Exception):
    """Base class for every error raised by reqkit."""


class SerializationError(ReqkitError, ValueError):
    """A value passed to set_json_body could not be encoded as JSON."""


class TransportBuildError(ReqkitError):
    """The outgoing request could not be constructed (bad method or URL)."""


class TransportError(ReqkitError):
    """
    The round trip failed.

    `kind` tells the causes apart:
      - "connection": DNS, refused connection, reset, protocol errors
      - "timeout":    the deadline passed before a response arrived
      - "cancelled":  the dispatch context was cancelled by the caller
    """

    def __init__(self, message: str, kind: TransportErrorKind = "connection"):
        super().__init__(message)
        self.kind = kind

    @property
    def is_timeout(self) -> bool:
        return self.kind == "timeout"

    @property
    def is_cancelled(self) -> bool:
        return self.kind == "cancelled"


class ReadError(ReqkitError):
    """Draining the response body failed."""

    def __init__(self, message: str, response: Any = None):
        super().__init__(message)
        self.response = response


class DecodeError(ReqkitError):
    """The body is not valid JSON or does not match the requested type."""

    def __init__(
        self,
        message: str,
        response: Any = None,
        body: bytes = b"",
        errors: Optional[List[dict]] = None,
    ):
        super().__init__(message)
        self.response = response
        self.body = body
        self.errors = errors or []
