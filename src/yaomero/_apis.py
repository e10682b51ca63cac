"""One coroutine per remote OMERO resource.

`ApisHandler` turns the JSON API, webclient API and webgateway endpoints into
typed models.  Collections are paginated with `limit`/`offset` until
`meta.totalCount` entries have been read.

Batches degrade per entity: an entity without identity is logged and
dropped, the rest of the batch is returned.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from typing import TYPE_CHECKING, Any, Literal, TypeVar
from urllib.parse import parse_qs, urlsplit

import numpy as np
from PIL import Image as PILImage
from PIL import UnidentifiedImageError
from pydantic import BaseModel, ValidationError

from yaomero._annotations import AnnotationGroup
from yaomero._entities import (
    Dataset,
    EntityKind,
    Group,
    Image,
    OrphanedFolder,
    Owner,
    Project,
    Server,
)
from yaomero._errors import DecodeError, HttpError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from yaomero._transport import Session

__all__ = ["ApisHandler", "decode_rendered_image"]

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)
AnnotationType = Literal["map", "tag", "comment", "file", "rating"]

# groups created by every OMERO server; they never hold user data
_SYSTEM_GROUPS = frozenset({"system", "user"})

_SHOW_RE = re.compile(r"^(project|dataset|image)-(\d+)$")
_IMG_DETAIL_RE = re.compile(r"/(?:webclient|webgateway)/img_detail/(\d+)/?$")


def decode_rendered_image(data: bytes) -> np.ndarray:
    """Decode a JPEG/PNG rendered by the webgateway to an (H, W, 3) uint8 array."""
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            return np.asarray(img.convert("RGB"))
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError("Could not decode rendered image") from e


def _decode(model: type[_M], payload: Any) -> _M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise DecodeError(f"Invalid {model.__name__} payload: {e}") from e


def _decode_batch(model: type[_M], payloads: list[Any]) -> list[_M]:
    out = []
    for payload in payloads:
        try:
            out.append(_decode(model, payload))
        except DecodeError as e:
            logger.warning("Dropping %s: %s", model.__name__, e)
    return out


class ApisHandler:
    """Typed access to the remote resources of one `Session`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def __repr__(self) -> str:
        return f"<ApisHandler {self._session.server_uri}>"

    @property
    def session(self) -> Session:
        return self._session

    @property
    def server_uri(self) -> str:
        return self._session.server_uri

    # ------------------------------------------------------------------ paging

    async def _list_all(
        self, url: str, params: Mapping[str, Any] | None = None
    ) -> list[Any]:
        """Read every page of a JSON API collection."""
        limit = self._session.settings.page_limit
        items: list[Any] = []
        offset = 0
        while True:
            page = await self._session.request(
                url, {**(params or {}), "limit": limit, "offset": offset}
            )
            if not isinstance(page, dict) or not isinstance(page.get("data"), list):
                raise DecodeError(f"Unexpected collection payload from {url}")
            data = page["data"]
            items.extend(data)
            total = (page.get("meta") or {}).get("totalCount")
            offset += len(data)
            if not data or total is None or offset >= total:
                return items

    async def _list_children(
        self, url: str, params: Mapping[str, Any] | None = None
    ) -> list[Any]:
        try:
            return await self._list_all(url, params)
        except HttpError as e:
            if e.is_not_found:
                logger.debug("%s not found, treating as empty", url)
                return []
            raise

    # ------------------------------------------------------------------ groups & owners

    async def list_owners(self) -> list[Owner]:
        """All the experimenters of the server."""
        payloads = await self._list_all(self._session.url("experimenters"))
        return _decode_batch(Owner, payloads)

    async def list_groups(self) -> list[Group]:
        """All the user groups of the server, each with its members."""
        base = self._session.url("experimentergroups")
        payloads = [
            p
            for p in await self._list_all(base)
            if isinstance(p, dict) and p.get("Name") not in _SYSTEM_GROUPS
        ]

        async def _with_members(payload: dict) -> dict:
            group_id = payload.get("@id")
            if group_id is None:
                return payload
            members = await self._list_children(
                f"{base.rstrip('/')}/{group_id}/experimenters/"
            )
            return {**payload, "experimenters": _decode_batch(Owner, members)}

        payloads = await asyncio.gather(*(_with_members(p) for p in payloads))
        return _decode_batch(Group, list(payloads))

    async def get_server(self) -> Server:
        """Groups and owners visible to the session, with the session defaults."""
        groups, owners = await asyncio.gather(self.list_groups(), self.list_owners())
        group_id = self._session.group_id
        default_group = next((g for g in groups if g.id == group_id), None)
        default_owner = next((o for o in owners if o.id == self._session.user_id), None)
        return Server.create(groups, owners, default_group, default_owner)

    # ------------------------------------------------------------------ repository

    async def list_projects(self) -> list[Project]:
        payloads = await self._list_all(
            self._session.url("projects"), {"childCount": "true"}
        )
        return _decode_batch(Project, payloads)

    async def list_datasets(self, project_id: int) -> list[Dataset]:
        """Datasets of a project.  An unknown project has no datasets."""
        url = f"{self._session.url('projects').rstrip('/')}/{project_id}/datasets/"
        payloads = await self._list_children(url, {"childCount": "true"})
        return _decode_batch(Dataset, payloads)

    async def list_images(self, dataset_id: int) -> list[Image]:
        """Images of a dataset.  An unknown dataset has no images."""
        url = f"{self._session.url('datasets').rstrip('/')}/{dataset_id}/images/"
        return _decode_batch(Image, await self._list_children(url))

    async def list_orphaned_image_ids(self) -> list[int]:
        """Ids of the images that belong to no dataset."""
        payloads = await self._list_all(
            self._session.url("images"), {"orphaned": "true"}
        )
        ids = []
        for payload in payloads:
            image_id = payload.get("@id") if isinstance(payload, dict) else None
            if isinstance(image_id, int):
                ids.append(image_id)
            else:
                logger.warning("Dropping orphaned image without id: %r", payload)
        return ids

    async def get_image(self, image_id: int) -> Image:
        """Full description of an image, as needed to read its pixels."""
        payload = await self._session.request(f"/webgateway/imgData/{image_id}/")
        if isinstance(payload, dict):
            payload.setdefault("id", image_id)
        return _decode(Image, payload)

    # ------------------------------------------------------------------ URIs

    def get_entity_uri(self, entity: Project | Dataset | Image | OrphanedFolder) -> str:
        """Link to an entity in the OMERO webclient."""
        match entity:
            case Project() | Dataset() | Image():
                return f"{self.server_uri}/webclient/?show={entity.type}-{entity.id}"
        raise ValueError(f"{entity!r} has no URI")

    @staticmethod
    def parse_entity_uri(uri: str) -> tuple[EntityKind, int]:
        """Inverse of `get_entity_uri`.

        Also accepts image detail links (`/webclient/img_detail/{id}/`,
        `/webgateway/img_detail/{id}/`).

        Examples
        --------
        >>> ApisHandler.parse_entity_uri("https://host/webclient/?show=dataset-3")
        ('dataset', 3)
        """
        parts = urlsplit(uri)
        if match := _IMG_DETAIL_RE.search(parts.path):
            return "image", int(match.group(1))
        if parts.path.rstrip("/").endswith("/webclient"):
            for show in parse_qs(parts.query).get("show", []):
                # several entities may be shown at once: "image-1|image-2"
                first = show.split("|")[0]
                if match := _SHOW_RE.match(first):
                    kind, entity_id = match.group(1), int(match.group(2))
                    return kind, entity_id  # type: ignore[return-value]
        raise ValueError(f"Not an OMERO entity URI: {uri!r}")

    # ------------------------------------------------------------------ annotations

    async def get_annotations(
        self,
        entity_id: int,
        kind: EntityKind,
        annotation_type: AnnotationType | None = None,
    ) -> AnnotationGroup:
        """Annotations of an entity, optionally restricted to one type."""
        params: dict[str, Any] = {kind: entity_id}
        if annotation_type is not None:
            params["type"] = annotation_type
        payload = await self._session.request("/webclient/api/annotations/", params)
        if not isinstance(payload, dict):
            raise DecodeError(f"Unexpected annotations payload for {kind} {entity_id}")
        return AnnotationGroup.from_payload(payload)

    # ------------------------------------------------------------------ pixels

    async def get_thumbnail(self, image_id: int, max_size: int = 256) -> np.ndarray:
        """Thumbnail of an image, as an (H, W, 3) uint8 array."""
        data = await self._session.request(
            f"/webgateway/render_thumbnail/{image_id}/{max_size}/", kind="bytes"
        )
        return decode_rendered_image(data)

    async def read_bytes(
        self, url: str, params: Mapping[str, Any] | None = None
    ) -> bytes:
        return await self._session.request(url, params, kind="bytes")
