"""Selection of the pixel API used to read an image."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from yaomero._errors import UnsupportedAPIError
from yaomero._state import StateStore
from yaomero.pixelapis._gateway import GatewayAPI
from yaomero.pixelapis._ms_pixel_buffer import MsPixelBufferAPI
from yaomero.pixelapis._web import WebAPI

if TYPE_CHECKING:
    from collections.abc import Sequence

    from yaomero._apis import ApisHandler
    from yaomero._entities import Image
    from yaomero.pixelapis._base import PixelAPI, PixelApiReader

__all__ = ["PixelAPIRegistry"]

logger = logging.getLogger(__name__)


class PixelAPIRegistry:
    """The pixel APIs of one server, in order of preference.

    Parameters
    ----------
    apis : Sequence[PixelAPI]
        The pixel APIs, most preferred first.
    state : StateStore | None
        Where the name of the selected API is published.

    Examples
    --------
    >>> registry = PixelAPIRegistry.default(apis_handler)  # doctest: +SKIP
    >>> reader = await registry.select(image)  # doctest: +SKIP
    """

    def __init__(
        self, apis: Sequence[PixelAPI], state: StateStore | None = None
    ) -> None:
        if len({api.name for api in apis}) != len(apis):
            raise ValueError("Pixel API names must be unique")
        self._apis = tuple(apis)
        self._state = state or StateStore()
        self._selected: PixelAPI | None = None

    @classmethod
    def default(
        cls, apis: ApisHandler, state: StateStore | None = None
    ) -> PixelAPIRegistry:
        """Raw pixel APIs first, rendered web tiles as a last resort."""
        return cls([MsPixelBufferAPI(apis), GatewayAPI(apis), WebAPI(apis)], state)

    def __repr__(self) -> str:
        return f"<PixelAPIRegistry {[api.name for api in self._apis]}>"

    @property
    def apis(self) -> tuple[PixelAPI, ...]:
        return self._apis

    def get(self, name: str) -> PixelAPI:
        for api in self._apis:
            if api.name == name:
                return api
        raise KeyError(f"No pixel API named {name!r}")

    @property
    def selected_api(self) -> PixelAPI | None:
        """The API tried first by `select`, if any."""
        return self._selected

    def set_selected_api(self, api: PixelAPI | str | None) -> None:
        if isinstance(api, str):
            api = self.get(api)
        elif api is not None and api not in self._apis:
            raise ValueError(f"{api!r} is not part of this registry")
        self._selected = api
        self._state.update(selected_pixel_api=api.name if api else None)

    async def available_apis(self, image: Image | None = None) -> list[PixelAPI]:
        """APIs usable with the server (and able to read `image`, if given)."""
        available = await asyncio.gather(*(api.is_available() for api in self._apis))
        return [
            api
            for api, ok in zip(self._apis, available)
            if ok and (image is None or api.can_read_image(image) is None)
        ]

    async def select(
        self, image: Image, preferred: PixelAPI | str | None = None
    ) -> PixelApiReader:
        """Create a reader for `image`.

        With `preferred`, only that API is tried.  Otherwise the selected API
        is tried first, then the others in order of preference.

        Raises
        ------
        UnsupportedAPIError
            If the preferred API cannot be used, or if no API can read
            `image`.
        """
        if preferred is not None:
            api = self.get(preferred) if isinstance(preferred, str) else preferred
            return await api.create_reader(image)

        candidates = list(self._apis)
        if self._selected is not None:
            candidates.remove(self._selected)
            candidates.insert(0, self._selected)

        reasons = []
        for api in candidates:
            if not await api.is_available():
                reasons.append(f"{api.name}: not available")
                continue
            if (reason := api.can_read_image(image)) is not None:
                reasons.append(f"{api.name}: {reason}")
                continue
            logger.debug("Reading image %s with %s", image.id, api.name)
            return await api.create_reader(image)
        raise UnsupportedAPIError(
            "any", f"no pixel API can read image {image.id} ({'; '.join(reasons)})"
        )

    async def close(self) -> None:
        for api in self._apis:
            close = getattr(api, "close", None)
            if close is not None:
                await close()
