"""Runtime configuration for a yaomero client."""

from __future__ import annotations

import os
from typing import Any

from pydantic import Field

from yaomero._base import _BaseModel

ENV_PREFIX = "YAOMERO_"


class ClientSettings(_BaseModel):
    """Caller-supplied knobs for a client.

    The server URI and credentials are *not* part of the settings; they are
    passed explicitly to `Client.create_or_get`.

    Examples
    --------
    >>> from yaomero import ClientSettings
    >>> ClientSettings(tile_cache_max_entries=10).tile_cache_max_entries
    10
    """

    page_limit: int = Field(
        default=200,
        gt=0,
        description="Number of entities requested per page from the JSON API.",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Total timeout, in seconds, of a single HTTP request.",
    )
    tile_cache_max_entries: int | None = Field(
        default=1000,
        gt=0,
        description="Maximum number of tiles kept in memory (None: unbounded).",
    )
    tile_cache_max_bytes: int | None = Field(
        default=None,
        gt=0,
        description="Maximum total size, in bytes, of cached tiles (None: unbounded).",
    )
    thumbnail_cache_max_entries: int | None = Field(
        default=500,
        gt=0,
        description="Maximum number of thumbnails kept in memory.",
    )
    ms_pixel_buffer_port: int = Field(
        default=8082,
        description="Port of the OMERO pixel buffer microservice.",
    )
    gateway_port: int = Field(
        default=4064,
        description="Port of the OMERO server (ICE) used by the gateway API.",
    )
    jpeg_quality: float = Field(
        default=0.9,
        gt=0,
        le=1,
        description="JPEG quality of tiles rendered by the web API.",
    )
    web_tile_size: int = Field(
        default=512,
        gt=0,
        description="Tile grid size used to request pyramid tiles from the web API.",
    )

    @classmethod
    def from_env(cls, **overrides: Any) -> ClientSettings:
        """Build settings from `YAOMERO_*` environment variables.

        e.g. `YAOMERO_PAGE_LIMIT=50` sets `page_limit`.  An empty value
        resets an optional field to None.  Keyword arguments take precedence
        over the environment.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw or None
        values.update(overrides)
        return cls.model_validate(values)
