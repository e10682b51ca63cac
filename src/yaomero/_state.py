"""Observable client state.

Presentation code never reaches into the client's internals: it reads
immutable `ClientState` snapshots, and subscribes to be handed a new snapshot
whenever a value changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import Field

from yaomero._base import _FrozenModel

__all__ = ["ClientState", "StateStore"]

logger = logging.getLogger(__name__)


class ClientState(_FrozenModel):
    """Snapshot of the observable state of a client."""

    entities_loading: int = Field(
        default=0, description="Number of hierarchy nodes whose children are loading."
    )
    orphaned_images_loaded: int = Field(
        default=0, description="Number of orphaned images fetched so far."
    )
    orphaned_images_total: int = Field(
        default=0, description="Total number of orphaned images on the server."
    )
    orphaned_images_loading: bool = Field(
        default=False, description="Whether orphaned images are being fetched."
    )
    thumbnails_loading: int = Field(
        default=0, description="Number of thumbnails being fetched."
    )
    selected_pixel_api: str | None = Field(
        default=None, description="Name of the pixel API used to open images."
    )
    opened_images: tuple[int, ...] = Field(
        default=(), description="Ids of the images currently opened."
    )


Listener = Callable[[ClientState], Any]


class StateStore:
    """Holds the current `ClientState` and notifies listeners of changes.

    Updates that do not change any value do not notify.  A listener raising
    an exception is logged and does not prevent the other listeners from
    being called.
    """

    def __init__(self, state: ClientState | None = None) -> None:
        self._state = state or ClientState()
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> ClientState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener(state)` on every change.  Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(self, **changes: Any) -> None:
        """Set some values of the state, notifying listeners if anything changed."""
        new = self._state.model_copy(update=changes)
        if new == self._state:
            return
        self._state = new
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                logger.exception("State listener %r failed", listener)

    def increment(self, name: str, delta: int = 1) -> None:
        self.update(**{name: getattr(self._state, name) + delta})
