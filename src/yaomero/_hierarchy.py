"""Lazily loaded tree of the repository entities of a server.

The tree is `server → projects → datasets → images`, plus one permanent
`OrphanedFolder` child of the server holding the images that belong to no
dataset.  Nodes load their children on demand; concurrent loads of the same
node are coalesced into a single remote call.

Each node goes through the states::

    NOT_LOADED ──> LOADING ──> LOADED
                     │  ^
                     v  │ (retry)
                 LOAD_FAILED

Children are set once, by the transition to LOADED, and never change after.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from yaomero._base import _FrozenModel
from yaomero._entities import (
    Dataset,
    Group,
    Image,
    OrphanedFolder,
    Owner,
    Project,
    child_kind,
    has_children,
    label,
)
from yaomero._errors import ClosedError, DecodeError, HttpError
from yaomero._inflight import InFlight
from yaomero._state import StateStore

if TYPE_CHECKING:
    from collections.abc import Iterator

    from yaomero._apis import ApisHandler

__all__ = [
    "Hierarchy",
    "HierarchyFilter",
    "HierarchyNode",
    "LoadState",
    "visible_children",
]

logger = logging.getLogger(__name__)

Entity = Project | Dataset | Image | OrphanedFolder


class LoadState(Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"


class HierarchyNode:
    """One node of the tree.  The root node has no entity (it is the server)."""

    def __init__(
        self,
        hierarchy: Hierarchy,
        entity: Entity | None = None,
        parent: HierarchyNode | None = None,
    ) -> None:
        self._hierarchy = hierarchy
        self.entity = entity
        self.parent = parent
        self._children: tuple[HierarchyNode, ...] = ()
        self._state = LoadState.NOT_LOADED
        self._error: BaseException | None = None
        if entity is not None and child_kind(entity) is None:
            self._state = LoadState.LOADED

    def __repr__(self) -> str:
        return f"<HierarchyNode {self.label!r} {self._state.name}>"

    @property
    def label(self) -> str:
        return "Server" if self.entity is None else label(self.entity)

    @property
    def key(self) -> tuple[str, str, int | None]:
        """De-duplication key of the load of this node's children."""
        match self.entity:
            case None:
                return ("children", "server", None)
            case OrphanedFolder():
                return ("children", "orphaned_folder", None)
            case Project(id=i) | Dataset(id=i) | Image(id=i):
                return ("children", self.entity.type, i)
        raise TypeError(f"Unexpected entity {self.entity!r}")  # pragma: no cover

    @property
    def children(self) -> tuple[HierarchyNode, ...]:
        """Loaded children (empty until `load_children` completed)."""
        return self._children

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        """Error of the last failed load, if any."""
        return self._error

    @property
    def may_have_children(self) -> bool:
        if self.entity is None:
            return True
        if self._state is LoadState.LOADED:
            return bool(self._children)
        return has_children(self.entity)

    def walk(self) -> Iterator[HierarchyNode]:
        """This node and its loaded descendants, depth first."""
        yield self
        for child in self._children:
            yield from child.walk()

    async def load_children(self) -> tuple[HierarchyNode, ...]:
        """Load the children of this node, or join the load already running.

        Returns immediately if the children were already loaded.  On failure
        the node moves to `LOAD_FAILED` and the error is raised; calling
        again retries.
        """
        if self._state is LoadState.LOADED:
            return self._children
        if self._hierarchy.closed:
            raise ClosedError("The hierarchy was closed")
        return await self._hierarchy._inflight.run(self.key, self._load)

    async def _load(self) -> tuple[HierarchyNode, ...]:
        hierarchy = self._hierarchy
        self._state = LoadState.LOADING
        hierarchy._state.increment("entities_loading")
        try:
            entities = await hierarchy._fetch_children(self.entity)
        except Exception as e:
            if hierarchy.closed:
                self._state = LoadState.NOT_LOADED
            else:
                self._state = LoadState.LOAD_FAILED
                self._error = e
            logger.warning("Could not load the children of %s: %r", self.label, e)
            raise
        finally:
            hierarchy._state.increment("entities_loading", -1)

        if hierarchy.closed:
            logger.debug("Discarding children of %s loaded after close", self.label)
            self._state = LoadState.NOT_LOADED
            return ()
        self._children = tuple(HierarchyNode(hierarchy, e, self) for e in entities)
        self._error = None
        self._state = LoadState.LOADED
        return self._children


class Hierarchy:
    """The entity tree of one server connection.

    Parameters
    ----------
    apis : ApisHandler
        Used to fetch the children of nodes.
    state : StateStore | None
        Where loading counters are published.  A private store is created
        if not given.
    """

    def __init__(self, apis: ApisHandler, state: StateStore | None = None) -> None:
        self._apis = apis
        self._state = state or StateStore()
        self._inflight: InFlight[tuple, tuple[HierarchyNode, ...]] = InFlight()
        self._closed = False
        self.root = HierarchyNode(self)

    def __repr__(self) -> str:
        closed = " (closed)" if self._closed else ""
        return f"<Hierarchy {self._apis.server_uri}{closed}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> StateStore:
        return self._state

    @property
    def loading(self) -> frozenset[tuple]:
        """Keys of the loads currently running."""
        return self._inflight.pending

    def close(self) -> None:
        """Stop applying the results of loads that complete from now on."""
        self._closed = True

    async def _fetch_children(self, entity: Entity | None) -> list[Entity]:
        match entity:
            case None:
                projects: list[Entity] = list(await self._apis.list_projects())
                return [*projects, OrphanedFolder()]
            case Project(id=project_id):
                return list(await self._apis.list_datasets(project_id))
            case Dataset(id=dataset_id):
                return list(await self._apis.list_images(dataset_id))
            case OrphanedFolder():
                return list(await self._fetch_orphaned_images())
            case Image():
                return []
        raise TypeError(f"Unexpected entity {entity!r}")  # pragma: no cover

    async def _fetch_orphaned_images(self) -> list[Image]:
        ids = await self._apis.list_orphaned_image_ids()
        self._state.update(
            orphaned_images_total=len(ids),
            orphaned_images_loaded=0,
            orphaned_images_loading=True,
        )

        async def _fetch(image_id: int) -> Image | None:
            try:
                return await self._apis.get_image(image_id)
            except HttpError as e:
                if not e.is_not_found:
                    raise
                logger.warning("Orphaned image %s disappeared", image_id)
            except DecodeError as e:
                logger.warning("Dropping orphaned image %s: %s", image_id, e)
            finally:
                if not self._closed:
                    self._state.increment("orphaned_images_loaded")
            return None

        try:
            images = await asyncio.gather(*(_fetch(i) for i in ids))
        finally:
            if not self._closed:
                self._state.update(orphaned_images_loading=False)
        return [image for image in images if image is not None]


class HierarchyFilter(_FrozenModel):
    """View-level selection of the entities to display.

    An entity matches when its label contains `text` (case-insensitive) and
    its owner and group match the selected ones.  No owner/group, or the
    "all members"/"all groups" pseudo values, match everything.
    """

    text: str = ""
    owner: Owner | None = None
    group: Group | None = None

    def matches(self, entity: Entity) -> bool:
        match entity:
            case OrphanedFolder():
                return True
            case Project() | Dataset() | Image():
                if self.text and self.text.lower() not in label(entity).lower():
                    return False
                if self.owner is not None and not self.owner.is_all_members:
                    if entity.owner is None or entity.owner.id != self.owner.id:
                        return False
                if self.group is not None and not self.group.is_all_groups:
                    if entity.group is None or entity.group.id != self.group.id:
                        return False
                return True
        raise TypeError(f"Unexpected entity {entity!r}")  # pragma: no cover


def visible_children(
    node: HierarchyNode, filter: HierarchyFilter | None = None
) -> list[HierarchyNode]:
    """Loaded children of `node` to display under `filter`.

    A child is visible if it matches, or if any of its loaded descendants
    does.  The orphaned folder is always visible.
    """
    if filter is None:
        return list(node.children)
    return [
        child
        for child in node.children
        if any(
            n.entity is not None and filter.matches(n.entity) for n in child.walk()
        )
    ]
