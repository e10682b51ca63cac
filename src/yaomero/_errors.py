"""Exceptions raised by yaomero.

Every error raised by the library derives from `OmeroError`, so callers can
catch everything with one clause, or handle specific failures (e.g. retry on
`NetworkError`) individually.
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "ClosedError",
    "DecodeError",
    "HttpError",
    "NetworkError",
    "OmeroError",
    "TileReadError",
    "UnsupportedAPIError",
]


class OmeroError(Exception):
    """Base class for all yaomero errors."""


class NetworkError(OmeroError, ConnectionError):
    """The server could not be reached, or the request timed out.

    This is the only error that is worth retrying at the caller level.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class AuthenticationError(OmeroError):
    """The server refused the provided credentials."""


class HttpError(OmeroError):
    """The server answered with a non-2xx status code."""

    def __init__(self, status: int, url: str = "", message: str = "") -> None:
        msg = f"HTTP {status} for {url}" if url else f"HTTP {status}"
        if message:
            msg = f"{msg}: {message}"
        super().__init__(msg)
        self.status = status
        self.url = url

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class DecodeError(OmeroError, ValueError):
    """A server response did not have the expected shape."""


class UnsupportedAPIError(OmeroError):
    """A pixel API cannot be used to read a given image."""

    def __init__(self, api_name: str, reason: str) -> None:
        super().__init__(f"{api_name}: {reason}")
        self.api_name = api_name
        self.reason = reason


class TileReadError(OmeroError, OSError):
    """Reading a tile failed. The original error is chained as `__cause__`."""


class ClosedError(OmeroError, RuntimeError):
    """The session, reader or image this operation is bound to was closed."""
