"""Pixel API reading raw pixels from the OMERO pixel buffer microservice.

The microservice listens on its own port of the web server host and serves
one channel of one tile per request::

    GET {scheme}://{host}:{port}/tile/{image}/{z}/{c}/{t}?x=&y=&w=&h=&resolution=

Without a `format` parameter the response body is the raw big-endian pixel
buffer.  The microservice numbers resolution levels from the lowest
resolution, so levels are reversed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from yaomero._errors import ClosedError, OmeroError, TileReadError, UnsupportedAPIError
from yaomero.pixelapis._base import compose_channels, decode_channel, reverse_level

if TYPE_CHECKING:
    import numpy as np

    from yaomero._apis import ApisHandler
    from yaomero._entities import Image, TileRequest

__all__ = ["MsPixelBufferAPI", "MsPixelBufferReader"]

logger = logging.getLogger(__name__)


class MsPixelBufferAPI:
    """Raw pixels from the pixel buffer microservice.

    Parameters
    ----------
    apis : ApisHandler
        Handler of the web server session.  The session cookie authenticates
        the requests to the microservice.
    port : int | None
        Port of the microservice.  Defaults to the `ms_pixel_buffer_port`
        setting.
    """

    name = "Pixel Buffer Microservice"
    can_access_raw_pixels = True

    def __init__(self, apis: ApisHandler, port: int | None = None) -> None:
        self._apis = apis
        self.port = port or apis.session.settings.ms_pixel_buffer_port
        self._available: bool | None = None

    def __repr__(self) -> str:
        return f"<MsPixelBufferAPI {self.base_uri}>"

    @property
    def base_uri(self) -> str:
        parts = urlsplit(self._apis.server_uri)
        return f"{parts.scheme}://{parts.hostname}:{self.port}"

    async def is_available(self, refresh: bool = False) -> bool:
        """Whether the microservice answers on its port.

        The result of the first probe is remembered; pass `refresh=True` to
        probe again.
        """
        if self._apis.session.closed:
            return False
        if self._available is None or refresh:
            self._available = await self._apis.session.is_reachable(
                f"{self.base_uri}/tile", method="OPTIONS"
            )
            logger.debug("%s available: %s", self.base_uri, self._available)
        return self._available

    def can_read_image(self, image: Image) -> str | None:
        if image.pixel_type is None:
            return "the pixel type of the image is unknown"
        if not image.pixel_type.is_supported:
            return f"pixel type {image.pixel_type.value} is not supported"
        if image.size_c == 0:
            return "the image has no channel"
        return None

    async def create_reader(self, image: Image) -> MsPixelBufferReader:
        if not await self.is_available():
            raise UnsupportedAPIError(self.name, f"no microservice at {self.base_uri}")
        if (reason := self.can_read_image(image)) is not None:
            raise UnsupportedAPIError(self.name, reason)
        return MsPixelBufferReader(self._apis, image, self.base_uri)


class MsPixelBufferReader:
    """Reads the tiles of one image, one concurrent request per channel."""

    api_name = MsPixelBufferAPI.name

    def __init__(self, apis: ApisHandler, image: Image, base_uri: str) -> None:
        if image.pixel_type is None:
            raise ValueError("The pixel type of the image is required")
        self._apis = apis
        self.image = image
        self.pixel_type = image.pixel_type
        self.base_uri = base_uri
        self._closed = False

    def __repr__(self) -> str:
        return f"<MsPixelBufferReader image={self.image.id}>"

    @property
    def closed(self) -> bool:
        return self._closed

    async def read_tile(self, request: TileRequest) -> np.ndarray:
        if self._closed:
            raise ClosedError(f"{self!r} is closed")
        try:
            resolution = reverse_level(request.level, self.image.n_levels)
        except ValueError as e:
            raise TileReadError(str(e)) from e
        params = {
            "x": request.x,
            "y": request.y,
            "w": request.width,
            "h": request.height,
            "resolution": resolution,
        }

        async def _read_channel(c: int) -> np.ndarray:
            url = f"{self.base_uri}/tile/{self.image.id}/{request.z}/{c}/{request.t}"
            raw = await self._apis.read_bytes(url, params)
            return decode_channel(raw, self.pixel_type, request.width, request.height)

        try:
            channels = await asyncio.gather(
                *(_read_channel(c) for c in range(self.image.size_c))
            )
        except OmeroError as e:
            raise TileReadError(f"Could not read {request}") from e
        return compose_channels(channels)

    async def close(self) -> None:
        self._closed = True
