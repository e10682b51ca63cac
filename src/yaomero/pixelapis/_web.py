"""Pixel API reading tiles rendered by the OMERO.web webgateway.

The webgateway renders tiles to JPEG, so pixel values are not raw: only
8-bit RGB images can be read faithfully.

Resolution levels are passed to the webgateway unchanged: it uses the same
numbering as `TileRequest` (0 = full resolution) and reverses it itself
before reaching the pixel store.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from yaomero._apis import decode_rendered_image
from yaomero._entities import PixelType
from yaomero._errors import ClosedError, OmeroError, TileReadError, UnsupportedAPIError

if TYPE_CHECKING:
    import numpy as np

    from yaomero._apis import ApisHandler
    from yaomero._entities import Image, TileRequest

__all__ = ["WebAPI", "WebReader"]

logger = logging.getLogger(__name__)


class WebAPI:
    """Rendered JPEG tiles from `/webgateway/render_image_region/`."""

    name = "Web"
    can_access_raw_pixels = False

    def __init__(self, apis: ApisHandler) -> None:
        self._apis = apis

    def __repr__(self) -> str:
        return f"<WebAPI {self._apis.server_uri}>"

    async def is_available(self) -> bool:
        return not self._apis.session.closed

    def can_read_image(self, image: Image) -> str | None:
        if image.pixel_type is not PixelType.UINT8:
            pixel_type = image.pixel_type.value if image.pixel_type else "unknown"
            return f"only 8-bit images can be rendered (image is {pixel_type})"
        if image.size_c != 3:
            n = image.size_c
            return f"only RGB images can be rendered (image has {n} channels)"
        return None

    async def create_reader(self, image: Image) -> WebReader:
        if not await self.is_available():
            raise UnsupportedAPIError(self.name, "the session is closed")
        if (reason := self.can_read_image(image)) is not None:
            raise UnsupportedAPIError(self.name, reason)
        settings = self._apis.session.settings
        return WebReader(
            self._apis,
            image,
            quality=settings.jpeg_quality,
            tile_size=settings.web_tile_size,
        )


class WebReader:
    """Reads the tiles of one image through the webgateway.

    Single-level images are read with arbitrary regions
    (`region=x,y,w,h`).  Pyramidal images can only be read on the tile grid
    (`tile=level,col,row,w,h`): the grid cell containing the requested tile
    is fetched and cropped.
    """

    api_name = WebAPI.name

    def __init__(
        self,
        apis: ApisHandler,
        image: Image,
        quality: float = 0.9,
        tile_size: int = 512,
    ) -> None:
        self._apis = apis
        self.image = image
        self.quality = quality
        self.tile_width = image.tile_width or tile_size
        self.tile_height = image.tile_height or tile_size
        self._closed = False

    def __repr__(self) -> str:
        return f"<WebReader image={self.image.id}>"

    @property
    def closed(self) -> bool:
        return self._closed

    async def read_tile(self, request: TileRequest) -> np.ndarray:
        if self._closed:
            raise ClosedError(f"{self!r} is closed")
        url = (
            f"/webgateway/render_image_region/{self.image.id}/{request.z}/{request.t}/"
        )
        params: dict[str, str] = {"q": f"{self.quality:g}"}
        crop = None
        if self.image.n_levels <= 1:
            x, y, w, h = request.x, request.y, request.width, request.height
            params["region"] = f"{x},{y},{w},{h}"
        else:
            col, x0 = divmod(request.x, self.tile_width)
            row, y0 = divmod(request.y, self.tile_height)
            if (
                x0 + request.width > self.tile_width
                or y0 + request.height > self.tile_height
            ):
                raise TileReadError(
                    f"{request} spans several {self.tile_width}x{self.tile_height} "
                    "grid cells of the webgateway"
                )
            params["tile"] = (
                f"{request.level},{col},{row},{self.tile_width},{self.tile_height}"
            )
            crop = (y0, x0)

        try:
            data = await self._apis.read_bytes(url, params)
            tile = decode_rendered_image(data)
        except OmeroError as e:
            raise TileReadError(f"Could not read {request}") from e
        if crop is not None:
            y0, x0 = crop
            tile = tile[y0 : y0 + request.height, x0 : x0 + request.width]
        return tile

    async def close(self) -> None:
        self._closed = True
