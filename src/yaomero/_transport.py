"""Authenticated HTTP session with an OMERO.web server.

Connecting follows the OMERO JSON API handshake:

1. `GET /api/` lists the supported API versions; the newest is used.
2. `GET {url:base}` lists the URLs of the API resources.
3. `GET {url:token}` returns a CSRF token, sent with every unsafe request.
4. With credentials, `POST {url:login}` opens an authenticated session.
   The session cookie is kept in the cookie jar and sent with every
   subsequent request.

All aiohttp errors are translated into the exceptions of `yaomero._errors`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Literal, overload
from urllib.parse import urljoin, urlsplit

import aiohttp

from yaomero._errors import (
    AuthenticationError,
    ClosedError,
    DecodeError,
    HttpError,
    NetworkError,
)
from yaomero._settings import ClientSettings

if TYPE_CHECKING:
    from collections.abc import Mapping

    from yaomero._entities import Credentials

__all__ = ["Session"]

logger = logging.getLogger(__name__)

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_LOGOUT_PATH = "/webclient/logout/"


def _version_key(version: Any) -> tuple[int, ...]:
    """Sortable key of an API version, e.g. "0.10" -> (0, 10)."""
    return tuple(int(part) for part in re.findall(r"\d+", str(version)))


def _normalize_server_uri(uri: str) -> str:
    parts = urlsplit(uri.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Invalid server URI {uri!r}: expected http(s)://host[:port]")
    return f"{parts.scheme}://{parts.netloc}{parts.path.rstrip('/')}"


class Session:
    """One connection to an OMERO.web server.

    Create instances with `await Session.connect(...)`, and release them with
    `await session.close()` (closing twice is harmless).
    """

    def __init__(
        self,
        server_uri: str,
        http: aiohttp.ClientSession,
        settings: ClientSettings | None = None,
    ) -> None:
        self._server_uri = _normalize_server_uri(server_uri)
        self._http = http
        self._settings = settings or ClientSettings()
        self._urls: dict[str, str] = {}
        self._csrf_token: str | None = None
        self._event_context: dict[str, Any] = {}
        self._omero_server: dict[str, Any] = {}
        self._closed = False

    def __repr__(self) -> str:
        user = self.username or "public"
        closed = " (closed)" if self._closed else ""
        return f"<Session {user}@{self._server_uri}{closed}>"

    # ---------------------------------------------------------------- connect

    @classmethod
    async def connect(
        cls,
        server_uri: str,
        credentials: Credentials | None = None,
        settings: ClientSettings | None = None,
    ) -> Session:
        """Open a session, logging in if `credentials` has a username.

        Raises
        ------
        AuthenticationError
            If the server rejects the credentials.
        NetworkError
            If the server cannot be reached.
        """
        settings = settings or ClientSettings()
        server_uri = _normalize_server_uri(server_uri)
        http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=settings.request_timeout),
            # unsafe: keep cookies of servers addressed by IP
            cookie_jar=aiohttp.CookieJar(unsafe=True),
        )
        session = cls(server_uri, http, settings)
        try:
            await session._handshake()
            if credentials is not None and not credentials.is_public:
                await session._login(credentials)
        except BaseException:
            await http.close()
            raise
        logger.info(
            "Connected to %s as %s", session.server_uri, session.username or "public"
        )
        return session

    async def _handshake(self) -> None:
        versions = await self.request("/api/")
        try:
            newest = max(
                versions["data"], key=lambda v: _version_key(v.get("version", ""))
            )
            base_url = newest["url:base"]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Unexpected API versions payload: {versions!r}") from e

        base = await self.request(base_url)
        if not isinstance(base, dict):
            raise DecodeError(f"Unexpected API base payload: {base!r}")
        self._urls = {k[4:]: v for k, v in base.items() if k.startswith("url:")}
        self._urls.setdefault("base", base_url)

        token = await self.request(self.url("token"))
        if not isinstance(token, dict) or "data" not in token:
            raise DecodeError(f"Unexpected CSRF token payload: {token!r}")
        self._csrf_token = str(token["data"])

    async def _login(self, credentials: Credentials) -> None:
        servers = await self.request(self.url("servers"))
        try:
            self._omero_server = servers["data"][0]
            server_id = self._omero_server["id"]
        except (KeyError, IndexError, TypeError) as e:
            raise DecodeError(f"Unexpected servers payload: {servers!r}") from e

        password = ""
        if credentials.password is not None:
            password = credentials.password.get_secret_value()
        try:
            payload = await self.request(
                self.url("login"),
                method="POST",
                data={
                    "server": str(server_id),
                    "username": credentials.username or "",
                    "password": password,
                },
            )
        except HttpError as e:
            if e.status in (400, 401, 403):
                raise AuthenticationError(
                    f"Login to {self._server_uri} as {credentials.username!r} failed"
                ) from e
            raise

        if not isinstance(payload, dict) or not payload.get("eventContext"):
            reason = payload
            if isinstance(payload, dict):
                reason = payload.get("message", payload)
            raise AuthenticationError(
                f"Login to {self._server_uri} as {credentials.username!r} "
                f"failed: {reason}"
            )
        self._event_context = payload["eventContext"]

    # ---------------------------------------------------------------- properties

    @property
    def server_uri(self) -> str:
        """URI of the OMERO.web server, without trailing slash."""
        return self._server_uri

    @property
    def web_server_uri(self) -> str:
        return self._server_uri

    @property
    def host(self) -> str:
        return urlsplit(self._server_uri).hostname or ""

    @property
    def omero_host(self) -> str:
        """Host of the OMERO server behind the web server (for ICE connections)."""
        host = self._omero_server.get("host")
        return host if host and host != "localhost" else self.host

    @property
    def omero_port(self) -> int:
        return int(self._omero_server.get("port") or self._settings.gateway_port)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def is_authenticated(self) -> bool:
        return bool(self._event_context)

    @property
    def username(self) -> str | None:
        return self._event_context.get("userName")

    @property
    def user_id(self) -> int | None:
        return self._event_context.get("userId")

    @property
    def group_id(self) -> int | None:
        return self._event_context.get("groupId")

    @property
    def session_uuid(self) -> str | None:
        """The OMERO session key, used to join this session through ICE."""
        return self._event_context.get("sessionUuid")

    @property
    def closed(self) -> bool:
        return self._closed

    def url(self, name: str) -> str:
        """URL of a JSON API resource, e.g. `url("projects")`."""
        if name in self._urls:
            return self._urls[name]
        base = self._urls.get("base", "/api/v0/")
        return urljoin(base, f"m/{name}/")

    def absolute(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self._server_uri}/{url.lstrip('/')}"

    # ---------------------------------------------------------------- requests

    @overload
    async def request(
        self,
        url: str,
        params: Mapping[str, Any] | None = ...,
        *,
        method: str = ...,
        data: Mapping[str, Any] | None = ...,
        kind: Literal["json"] = ...,
    ) -> Any: ...
    @overload
    async def request(
        self,
        url: str,
        params: Mapping[str, Any] | None = ...,
        *,
        method: str = ...,
        data: Mapping[str, Any] | None = ...,
        kind: Literal["bytes"],
    ) -> bytes: ...
    async def request(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        *,
        method: str = "GET",
        data: Mapping[str, Any] | None = None,
        kind: Literal["json", "bytes"] = "json",
    ) -> Any:
        """Send a request and decode its response.

        Parameters
        ----------
        url : str
            Absolute URL, or path relative to the server URI.
        params : Mapping[str, Any] | None
            Query parameters.
        method : str
            HTTP method.
        data : Mapping[str, Any] | None
            Form data, for POST requests.
        kind : {"json", "bytes"}
            Whether to decode the body as JSON or return the raw bytes.

        Raises
        ------
        HttpError
            If the server answers with an error status.
        NetworkError
            If the server cannot be reached, or the request times out.
        DecodeError
            If `kind="json"` and the body is not valid JSON.
        ClosedError
            If the session was closed.
        """
        if self._closed:
            raise ClosedError(f"{self!r} is closed")
        full_url = self.absolute(url)
        method = method.upper()
        headers = {"Referer": self._server_uri}
        if method not in _SAFE_METHODS and self._csrf_token:
            headers["X-CSRFToken"] = self._csrf_token
        query = {k: str(v) for k, v in params.items()} if params else None

        logger.debug("%s %s %s", method, full_url, query or "")
        try:
            async with self._http.request(
                method, full_url, params=query, data=data, headers=headers
            ) as response:
                body = await response.read()
                if response.status >= 400:
                    text = body[:200].decode("utf-8", errors="replace")
                    raise HttpError(response.status, full_url, text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Could not reach {full_url}: {e!r}", e) from e

        if kind == "bytes":
            return body
        try:
            return json.loads(body)
        except ValueError as e:
            raise DecodeError(f"Response of {full_url} is not valid JSON") from e

    async def is_reachable(self, url: str, method: str = "OPTIONS") -> bool:
        """Whether `url` answers `method` with a non-error status.  Never raises."""
        if self._closed:
            return False
        try:
            async with self._http.request(method, self.absolute(url)) as response:
                return response.status < 400
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("%s is not reachable: %r", url, e)
            return False

    # ---------------------------------------------------------------- close

    async def close(self) -> None:
        """Log out (if logged in) and release the connection.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            if self.is_authenticated:
                headers = {"Referer": self._server_uri}
                if self._csrf_token:
                    headers["X-CSRFToken"] = self._csrf_token
                async with self._http.post(
                    self.absolute(_LOGOUT_PATH), headers=headers
                ) as response:
                    if response.status >= 400:
                        logger.warning(
                            "Logout from %s failed with status %s",
                            self._server_uri,
                            response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Logout from %s failed: %r", self._server_uri, e)
        finally:
            await self._http.close()
            logger.info("Disconnected from %s", self._server_uri)
