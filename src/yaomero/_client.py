"""Entry point of the library: one `Client` per server connection."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, ClassVar

from yaomero._apis import ApisHandler
from yaomero._cache import LRUCache
from yaomero._errors import ClosedError
from yaomero._hierarchy import Hierarchy, HierarchyNode
from yaomero._inflight import InFlight
from yaomero._settings import ClientSettings
from yaomero._state import StateStore
from yaomero._transport import Session, _normalize_server_uri
from yaomero.pixelapis import PixelAPIRegistry

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from typing_extensions import Self

    from yaomero._entities import Credentials, Image, Server, TileRequest
    from yaomero.pixelapis import PixelAPI, PixelApiReader

__all__ = ["Client", "ImageSession"]

logger = logging.getLogger(__name__)

_ClientKey = tuple[str, str | None, asyncio.AbstractEventLoop]
_TileKey = tuple[str, "TileRequest"]


class ImageSession:
    """An opened image: reads its tiles through a shared tile cache.

    Obtained with `Client.open_image`.  Tiles read once are served from the
    cache until evicted.  Cache keys include the pixel API of the reader, so
    raw and rendered tiles of the same region are kept apart.
    """

    def __init__(
        self,
        image: Image,
        reader: PixelApiReader,
        cache: LRUCache[_TileKey, np.ndarray],
        on_close: Callable[[ImageSession], Any] | None = None,
    ) -> None:
        self.image = image
        self.reader = reader
        self._cache = cache
        self._on_close = on_close
        self._closed = False

    def __repr__(self) -> str:
        return f"<ImageSession image={self.image.id} reader={self.reader!r}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def cache_key(self, request: TileRequest) -> _TileKey:
        return (self.reader.api_name, request)

    async def read_tile(self, request: TileRequest) -> np.ndarray:
        """Read one tile as an (height, width, channels) array.

        Raises
        ------
        ClosedError
            If the session was closed.
        TileReadError
            If the tile could not be read.
        """
        if self._closed:
            raise ClosedError(f"{self!r} is closed")
        if request.image_id != self.image.id:
            raise ValueError(f"{request} does not belong to image {self.image.id}")
        return await self._cache.get_or_fetch(
            self.cache_key(request),
            lambda: self.reader.read_tile(request),
            store=lambda: not self._closed,
        )

    async def close(self) -> None:
        """Release the reader.  Idempotent; reads still running are not cached."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.reader.close()
        finally:
            if self._on_close is not None:
                self._on_close(self)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class Client:
    """A connection to an OMERO server, and everything built on top of it.

    Use `Client.create_or_get` rather than the constructor: it connects, and
    reuses the open client of the same server and user if there is one.

    Attributes
    ----------
    session : Session
        The HTTP session with the web server.
    apis : ApisHandler
        Typed access to the remote resources.
    hierarchy : Hierarchy
        Lazily loaded tree of projects, datasets and images.
    pixel_apis : PixelAPIRegistry
        The APIs able to read pixel values.
    state : StateStore
        Observable loading counters and selections.

    Examples
    --------
    >>> uri = "https://idr.openmicroscopy.org"
    >>> async with await Client.create_or_get(uri) as client:
    ...     projects = await client.expand()  # doctest: +SKIP
    """

    _clients: ClassVar[dict[_ClientKey, Client]] = {}
    _connecting: ClassVar[InFlight[_ClientKey, Client]] = InFlight()

    def __init__(
        self, session: Session, settings: ClientSettings | None = None
    ) -> None:
        self.settings = settings or session.settings
        self.session = session
        self.state = StateStore()
        self.apis = ApisHandler(session)
        self.hierarchy = Hierarchy(self.apis, self.state)
        self.pixel_apis = PixelAPIRegistry.default(self.apis, self.state)
        self._tile_cache: LRUCache[_TileKey, np.ndarray] = LRUCache(
            self.settings.tile_cache_max_entries, self.settings.tile_cache_max_bytes
        )
        self._thumbnail_cache: LRUCache[tuple[int, int], np.ndarray] = LRUCache(
            self.settings.thumbnail_cache_max_entries
        )
        self._server: Server | None = None
        self._loading_server: InFlight[str, Server] = InFlight()
        self._images: list[ImageSession] = []
        self._closed = False
        # aiohttp sessions are bound to the loop they were created in
        self._loop = asyncio.get_running_loop()

    def __repr__(self) -> str:
        return f"<Client {self.session!r}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """The event loop the client was created in, and must be used from."""
        return self._loop

    @property
    def tile_cache(self) -> LRUCache[_TileKey, np.ndarray]:
        return self._tile_cache

    @property
    def thumbnail_cache(self) -> LRUCache[tuple[int, int], np.ndarray]:
        return self._thumbnail_cache

    @property
    def image_sessions(self) -> tuple[ImageSession, ...]:
        return tuple(self._images)

    # ------------------------------------------------------------------ registry

    @classmethod
    async def create_or_get(
        cls,
        server_uri: str,
        credentials: Credentials | None = None,
        settings: ClientSettings | None = None,
    ) -> Client:
        """Connect to a server, or return the open client of the same user.

        Clients are only reused within the event loop that created them.
        Clients left behind by a closed event loop are discarded.

        Raises
        ------
        AuthenticationError
            If the credentials are rejected.
        NetworkError
            If the server cannot be reached.
        """
        username = None
        if credentials is not None and not credentials.is_public:
            username = credentials.username
        cls._forget_stale_clients()
        key = (_normalize_server_uri(server_uri), username, asyncio.get_running_loop())
        if (client := cls._clients.get(key)) is not None and not client.closed:
            logger.debug("Reusing client of %s", key)
            return client

        async def _create() -> Client:
            session = await Session.connect(server_uri, credentials, settings)
            client = cls(session, settings)
            cls._clients[key] = client
            return client

        return await cls._connecting.run(key, _create)

    @classmethod
    def clients(cls) -> list[Client]:
        """The clients currently open."""
        cls._forget_stale_clients()
        return [c for c in cls._clients.values() if not c.closed]

    @classmethod
    def _forget_stale_clients(cls) -> None:
        for key, client in list(cls._clients.items()):
            if client.loop.is_closed():
                logger.warning("Discarding %r: its event loop is closed", client)
                del cls._clients[key]
                client._abandon()

    # ------------------------------------------------------------------ entities

    @property
    def server(self) -> Server | None:
        """Groups and owners of the server, once `get_server` completed."""
        return self._server

    async def get_server(self) -> Server:
        """Load the groups and owners of the server (once)."""
        self._check_open()
        if self._server is None:
            server = await self._loading_server.run("server", self.apis.get_server)
            if not self._closed:
                self._server = server
            return server
        return self._server

    async def expand(
        self, node: HierarchyNode | None = None
    ) -> tuple[HierarchyNode, ...]:
        """Load the children of `node` (default: the server root)."""
        self._check_open()
        return await (node or self.hierarchy.root).load_children()

    async def fetch_thumbnail(self, image_id: int, max_size: int = 256) -> np.ndarray:
        """Thumbnail of an image, as an (H, W, 3) uint8 array.  Cached."""
        self._check_open()

        async def _fetch() -> np.ndarray:
            self.state.increment("thumbnails_loading")
            try:
                return await self.apis.get_thumbnail(image_id, max_size)
            finally:
                self.state.increment("thumbnails_loading", -1)

        return await self._thumbnail_cache.get_or_fetch((image_id, max_size), _fetch)

    # ------------------------------------------------------------------ images

    async def open_image(
        self, image: int | str, api: PixelAPI | str | None = None
    ) -> ImageSession:
        """Open an image by id or webclient URI.

        Parameters
        ----------
        image : int | str
            Id of the image, or a link to it (see `ApisHandler.parse_entity_uri`).
        api : PixelAPI | str | None
            Pixel API (or its name) to use.  By default the best available
            one is chosen by the registry.

        Raises
        ------
        UnsupportedAPIError
            If no suitable pixel API can read the image.
        """
        self._check_open()
        if isinstance(image, str):
            kind, image_id = ApisHandler.parse_entity_uri(image)
            if kind != "image":
                raise ValueError(f"{image!r} does not link to an image")
        else:
            image_id = image

        description = await self.apis.get_image(image_id)
        reader = await self.pixel_apis.select(description, api)
        if self._closed:
            await reader.close()
            raise ClosedError(f"{self!r} was closed while opening image {image_id}")

        session = ImageSession(
            description, reader, self._tile_cache, self._forget_image
        )
        self._images.append(session)
        self._publish_images()
        logger.info("Opened image %s with %r", image_id, reader)
        return session

    def _forget_image(self, session: ImageSession) -> None:
        if session in self._images:
            self._images.remove(session)
            self._publish_images()

    def _publish_images(self) -> None:
        self.state.update(opened_images=tuple(s.image.id for s in self._images))

    # ------------------------------------------------------------------ lifecycle

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError(f"{self!r} is closed")

    def _abandon(self) -> None:
        # the session cannot be closed without its event loop
        self._closed = True
        self.hierarchy.close()
        self._tile_cache.close()
        self._thumbnail_cache.close()

    async def close(self) -> None:
        """Close the image sessions, the caches and the connection.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        for key in [k for k, c in self._clients.items() if c is self]:
            del self._clients[key]

        self.hierarchy.close()
        self._tile_cache.close()
        self._thumbnail_cache.close()
        results = await asyncio.gather(
            *(s.close() for s in list(self._images)),
            self.pixel_apis.close(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Error while closing %r: %r", self, result)
        await self.session.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
