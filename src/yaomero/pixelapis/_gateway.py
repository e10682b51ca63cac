"""Pixel API reading raw pixels through the OMERO gateway (ICE).

Requires the optional `omero-py` package (`pip install yaomero[gateway]`).
The gateway joins the web session with its OMERO session key, so no
password is needed; public sessions have no key and cannot use it.

omero-py is blocking: every call runs in a worker thread, and the calls of
one reader are serialized because a `RawPixelsStore` is not thread-safe.
The store numbers resolution levels from the lowest resolution, so levels
are reversed.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
from typing import TYPE_CHECKING, Any

from yaomero._errors import (
    AuthenticationError,
    ClosedError,
    DecodeError,
    TileReadError,
    UnsupportedAPIError,
)
from yaomero.pixelapis._base import compose_channels, decode_channel, reverse_level

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np

    from yaomero._apis import ApisHandler
    from yaomero._entities import Image, TileRequest

__all__ = ["GatewayAPI", "GatewayReader"]

logger = logging.getLogger(__name__)


def _omero_installed() -> bool:
    return importlib.util.find_spec("omero") is not None


class GatewayAPI:
    """Raw pixels from `RawPixelsStore` services of the OMERO server.

    Parameters
    ----------
    apis : ApisHandler
        Handler of the (authenticated) web session to join.
    connect : Callable[[], Any] | None
        Blocking function returning a connected `omero.gateway.BlitzGateway`
        (or any object with the same `c.sf` and `getObject` attributes).
        Defaults to joining the web session with omero-py.
    """

    name = "Ice"
    can_access_raw_pixels = True

    def __init__(
        self, apis: ApisHandler, connect: Callable[[], Any] | None = None
    ) -> None:
        self._apis = apis
        self._connect_func = connect
        self._conn: Any = None
        self._conn_lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        session = self._apis.session
        return f"<GatewayAPI {session.omero_host}:{session.omero_port}>"

    async def is_available(self) -> bool:
        session = self._apis.session
        if self._closed or session.closed:
            return False
        if not session.is_authenticated or not session.session_uuid:
            return False
        return self._connect_func is not None or _omero_installed()

    def can_read_image(self, image: Image) -> str | None:
        if image.pixel_type is None:
            return "the pixel type of the image is unknown"
        if not image.pixel_type.is_supported:
            return f"pixel type {image.pixel_type.value} is not supported"
        if image.size_c == 0:
            return "the image has no channel"
        return None

    def _join_web_session(self) -> Any:
        from omero.gateway import BlitzGateway

        session = self._apis.session
        conn = BlitzGateway(host=session.omero_host, port=session.omero_port)
        if not conn.connect(sUuid=session.session_uuid):
            raise AuthenticationError(
                f"Could not join session of {session.username} on "
                f"{session.omero_host}:{session.omero_port}"
            )
        conn.SERVICE_OPTS.setOmeroGroup("-1")
        return conn

    async def _connection(self) -> Any:
        async with self._conn_lock:
            if self._conn is None:
                connect = self._connect_func or self._join_web_session
                self._conn = await asyncio.to_thread(connect)
                logger.info(
                    "Joined %s through the OMERO gateway", self._apis.server_uri
                )
            return self._conn

    async def create_reader(self, image: Image) -> GatewayReader:
        if not await self.is_available():
            raise UnsupportedAPIError(
                self.name,
                "omero-py is not installed"
                if not _omero_installed() and self._connect_func is None
                else "an authenticated session is required",
            )
        if (reason := self.can_read_image(image)) is not None:
            raise UnsupportedAPIError(self.name, reason)

        conn = await self._connection()

        def _open_store() -> Any:
            obj = conn.getObject("Image", image.id)
            if obj is None:
                raise UnsupportedAPIError(self.name, f"image {image.id} not found")
            store = conn.c.sf.createRawPixelsStore()
            store.setPixelsId(obj.getPixelsId(), True)
            return store

        store = await asyncio.to_thread(_open_store)
        return GatewayReader(image, store)

    async def close(self) -> None:
        """Close the gateway connection without ending the web session."""
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            conn, self._conn = self._conn, None
            try:
                # hard=False keeps the session shared with the web server alive
                await asyncio.to_thread(conn.close, hard=False)
            except Exception as e:
                logger.warning("Could not close the OMERO gateway connection: %r", e)


class GatewayReader:
    """Reads the tiles of one image from one `RawPixelsStore`.

    Unlike the other readers, channels are read one after the other: the
    store is stateful (pixels id, resolution level) and not thread-safe, so
    all calls on it are serialized, including those of concurrent reads.
    """

    api_name = GatewayAPI.name

    def __init__(self, image: Image, store: Any) -> None:
        if image.pixel_type is None:
            raise ValueError("The pixel type of the image is required")
        self.image = image
        self.pixel_type = image.pixel_type
        self._store = store
        self._lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"<GatewayReader image={self.image.id}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def _read_sync(self, request: TileRequest, resolution: int) -> list[bytes]:
        self._store.setResolutionLevel(resolution)
        return [
            self._store.getTile(
                request.z,
                c,
                request.t,
                request.x,
                request.y,
                request.width,
                request.height,
            )
            for c in range(self.image.size_c)
        ]

    async def read_tile(self, request: TileRequest) -> np.ndarray:
        if self._closed:
            raise ClosedError(f"{self!r} is closed")
        try:
            resolution = reverse_level(request.level, self.image.n_levels)
        except ValueError as e:
            raise TileReadError(str(e)) from e

        async with self._lock:
            if self._closed:
                raise ClosedError(f"{self!r} is closed")
            try:
                buffers = await asyncio.to_thread(self._read_sync, request, resolution)
            except Exception as e:
                # omero-py raises Ice exceptions, which share no common base
                raise TileReadError(f"Could not read {request}") from e

        try:
            channels = [
                decode_channel(raw, self.pixel_type, request.width, request.height)
                for raw in buffers
            ]
        except DecodeError as e:
            raise TileReadError(f"Could not decode {request}") from e
        return compose_channels(channels)

    async def close(self) -> None:
        """Release the pixel store.  Idempotent; errors are logged."""
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            try:
                await asyncio.to_thread(self._store.close)
            except Exception as e:
                logger.warning(
                    "Could not close the pixel store of %s: %r", self.image.id, e
                )
