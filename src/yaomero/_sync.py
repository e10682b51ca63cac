"""Blocking facade over `Client`, for scripts and interactive sessions.

Every coroutine runs on fsspec's dedicated IO event loop thread, so the
facade can be used from code that has no event loop (or whose event loop
must not be blocked by nested `asyncio.run` calls).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fsspec.asyn import get_loop, sync

from yaomero._client import Client

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable, Coroutine

    import numpy as np
    from typing_extensions import Self

    from yaomero._annotations import AnnotationGroup
    from yaomero._client import ImageSession
    from yaomero._entities import Credentials, EntityKind, Image, Server, TileRequest
    from yaomero._hierarchy import HierarchyNode
    from yaomero._settings import ClientSettings
    from yaomero._state import StateStore
    from yaomero.pixelapis import PixelAPI

__all__ = ["SyncClient", "SyncImageSession"]


class _Blocking:
    _loop: asyncio.AbstractEventLoop

    def _run(self, func: Callable[..., Coroutine[Any, Any, Any]], *args: Any) -> Any:
        return sync(self._loop, func, *args)


class SyncImageSession(_Blocking):
    """Blocking version of `ImageSession`."""

    def __init__(self, session: ImageSession, loop: asyncio.AbstractEventLoop) -> None:
        self._session = session
        self._loop = loop

    def __repr__(self) -> str:
        return f"<SyncImageSession image={self.image.id}>"

    @property
    def image(self) -> Image:
        return self._session.image

    @property
    def closed(self) -> bool:
        return self._session.closed

    def read_tile(self, request: TileRequest) -> np.ndarray:
        return self._run(self._session.read_tile, request)

    def close(self) -> None:
        self._run(self._session.close)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class SyncClient(_Blocking):
    """Blocking version of `Client`.

    Examples
    --------
    >>> with SyncClient.connect("https://idr.openmicroscopy.org") as client:
    ...     projects = client.expand()  # doctest: +SKIP
    """

    def __init__(
        self, client: Client, loop: asyncio.AbstractEventLoop | None = None
    ) -> None:
        self._client = client
        self._loop = loop or get_loop()

    def __repr__(self) -> str:
        return f"<SyncClient {self._client.session!r}>"

    @classmethod
    def connect(
        cls,
        server_uri: str,
        credentials: Credentials | None = None,
        settings: ClientSettings | None = None,
    ) -> SyncClient:
        """Blocking version of `Client.create_or_get`."""
        loop = get_loop()
        client = sync(loop, Client.create_or_get, server_uri, credentials, settings)
        return cls(client, loop)

    @property
    def client(self) -> Client:
        """The wrapped asynchronous client."""
        return self._client

    @property
    def state(self) -> StateStore:
        return self._client.state

    @property
    def root(self) -> HierarchyNode:
        return self._client.hierarchy.root

    @property
    def closed(self) -> bool:
        return self._client.closed

    def get_server(self) -> Server:
        return self._run(self._client.get_server)

    def expand(self, node: HierarchyNode | None = None) -> tuple[HierarchyNode, ...]:
        return self._run(self._client.expand, node)

    def fetch_thumbnail(self, image_id: int, max_size: int = 256) -> np.ndarray:
        return self._run(self._client.fetch_thumbnail, image_id, max_size)

    def get_annotations(self, entity_id: int, kind: EntityKind) -> AnnotationGroup:
        return self._run(self._client.apis.get_annotations, entity_id, kind)

    def open_image(
        self, image: int | str, api: PixelAPI | str | None = None
    ) -> SyncImageSession:
        session = self._run(self._client.open_image, image, api)
        return SyncImageSession(session, self._loop)

    def close(self) -> None:
        self._run(self._client.close)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
