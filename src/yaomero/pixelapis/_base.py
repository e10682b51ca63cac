"""Contract shared by the pixel APIs, and the pixel decoding helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from yaomero._errors import DecodeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from yaomero._entities import Image, PixelType, TileRequest

__all__ = [
    "PixelAPI",
    "PixelApiReader",
    "compose_channels",
    "decode_channel",
    "reverse_level",
]


@runtime_checkable
class PixelApiReader(Protocol):
    """Reads the tiles of one image."""

    @property
    def api_name(self) -> str:
        """Name of the pixel API the reader belongs to."""

    async def read_tile(self, request: TileRequest) -> np.ndarray:
        """Read one tile.

        Parameters
        ----------
        request : TileRequest
            The tile to read.  `request.level` is 0 for full resolution.

        Returns
        -------
        np.ndarray
            Array of shape (height, width, channels).

        Raises
        ------
        TileReadError
            If any part of the tile could not be read.
        ClosedError
            If the reader was closed.
        """

    async def close(self) -> None:
        """Release the remote resources held by the reader.  Idempotent."""


@runtime_checkable
class PixelAPI(Protocol):
    """A way of retrieving pixel values from a server."""

    @property
    def name(self) -> str:
        """Human readable name of the API."""

    @property
    def can_access_raw_pixels(self) -> bool:
        """Whether readers return raw values (rather than rendered RGB)."""

    async def is_available(self) -> bool:
        """Whether the API can be used with the current server.  Never raises."""

    def can_read_image(self, image: Image) -> str | None:
        """None if `image` can be read, otherwise the reason why it cannot."""

    async def create_reader(self, image: Image) -> PixelApiReader:
        """Create a reader for `image`.

        Raises
        ------
        UnsupportedAPIError
            If the API is not available, or cannot read `image`.
        """


def reverse_level(level: int, n_levels: int) -> int:
    """Map level `level` of `n_levels` to the reversed numbering.

    The mapping is its own inverse.

    Examples
    --------
    >>> reverse_level(0, 3)
    2
    >>> reverse_level(reverse_level(1, 3), 3)
    1
    """
    if not 0 <= level < n_levels:
        raise ValueError(f"Level {level} out of range for {n_levels} levels")
    return n_levels - 1 - level


def decode_channel(
    raw: bytes, pixel_type: PixelType, width: int, height: int
) -> np.ndarray:
    """Reinterpret the big-endian bytes of one channel as a (height, width) array.

    The returned array uses the native byte order.
    """
    if not pixel_type.is_supported:
        raise DecodeError(f"Pixel type {pixel_type.value} cannot be decoded")
    expected = width * height * pixel_type.bytes_per_pixel
    if len(raw) != expected:
        raise DecodeError(
            f"Expected {expected} bytes for a {width}x{height} {pixel_type.value} "
            f"buffer, got {len(raw)}"
        )
    data = np.frombuffer(raw, dtype=pixel_type.dtype).reshape(height, width)
    return data.astype(pixel_type.dtype.newbyteorder("="), copy=False)


def compose_channels(channels: Sequence[np.ndarray]) -> np.ndarray:
    """Stack (height, width) channels into a (height, width, channels) array."""
    if not channels:
        raise ValueError("At least one channel is required")
    if len(channels) == 1 and channels[0].dtype == np.uint8:
        return channels[0][..., np.newaxis]
    return np.stack(channels, axis=-1)
