"""Annotations attached to server entities (key-value pairs, tags, files...)."""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, TypeAlias, TypeVar

from pydantic import Field, ValidationError, model_validator

from yaomero._base import _FrozenModel
from yaomero._entities import Owner

__all__ = [
    "Annotation",
    "AnnotationGroup",
    "CommentAnnotation",
    "FileAnnotation",
    "MapAnnotation",
    "RatingAnnotation",
    "TagAnnotation",
]

logger = logging.getLogger(__name__)

RATING_NAMESPACE = "openmicroscopy.org/omero/insight/rating"


class _AnnotationBase(_FrozenModel):
    id: int
    namespace: str | None = None
    owner: Owner | None = None
    added_by: Owner | None = None

    @staticmethod
    def _common(data: dict) -> dict[str, Any]:
        link = data.get("link") or {}
        return {
            "id": data.get("id"),
            "namespace": data.get("ns"),
            "owner": data.get("owner"),
            "added_by": link.get("owner"),
        }


class MapAnnotation(_AnnotationBase):
    """Key-value pairs.  Keys are not unique."""

    type: Literal["map"] = "map"
    values: tuple[tuple[str, str], ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            values = [(str(k), str(v)) for k, v in data.get("values") or ()]
            return {**cls._common(data), "values": values}
        return data

    def as_dict(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for key, value in self.values:
            out.setdefault(key, []).append(value)
        return out


class TagAnnotation(_AnnotationBase):
    type: Literal["tag"] = "tag"
    value: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            return {**cls._common(data), "value": data.get("textValue") or ""}
        return data


class CommentAnnotation(_AnnotationBase):
    type: Literal["comment"] = "comment"
    value: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            return {**cls._common(data), "value": data.get("textValue") or ""}
        return data


class FileAnnotation(_AnnotationBase):
    """An attached file.  Only its description is fetched, not its content."""

    type: Literal["file"] = "file"
    filename: str = ""
    mimetype: str | None = None
    size: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            file = data.get("file") or {}
            return {
                **cls._common(data),
                "filename": file.get("name") or "",
                "mimetype": file.get("mimetype"),
                "size": file.get("size"),
            }
        return data


class RatingAnnotation(_AnnotationBase):
    """A rating, between 0 and 5 stars."""

    type: Literal["rating"] = "rating"
    value: int = Field(default=0, ge=0, le=5)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            return {**cls._common(data), "value": data.get("longValue") or 0}
        return data


Annotation: TypeAlias = Annotated[
    MapAnnotation
    | TagAnnotation
    | CommentAnnotation
    | FileAnnotation
    | RatingAnnotation,
    Field(discriminator="type"),
]
_ANNOTATION_CLASSES: dict[str, type[_AnnotationBase]] = {
    "MapAnnotationI": MapAnnotation,
    "TagAnnotationI": TagAnnotation,
    "CommentAnnotationI": CommentAnnotation,
    "FileAnnotationI": FileAnnotation,
}

_A = TypeVar("_A", bound=_AnnotationBase)


def _annotation_class(payload: dict) -> type[_AnnotationBase] | None:
    cls_name = payload.get("class", "")
    if cls_name == "LongAnnotationI" and payload.get("ns") == RATING_NAMESPACE:
        return RatingAnnotation
    return _ANNOTATION_CLASSES.get(cls_name)


class AnnotationGroup(_FrozenModel):
    """All the annotations of one entity.

    Build from a `/webclient/api/annotations/` response with `from_payload`.
    """

    annotations: tuple[Annotation, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict) -> AnnotationGroup:
        """Parse a webclient annotations response.

        Annotation owners are given by id only; they are resolved against the
        `experimenters` listed in the same response.  Annotations of an
        unknown kind, or that cannot be parsed, are dropped.
        """
        owners: dict[int, dict] = {}
        for experimenter in payload.get("experimenters") or ():
            if isinstance(experimenter, dict) and "id" in experimenter:
                owners[experimenter["id"]] = experimenter

        def _resolve(ref: Any) -> Any:
            if isinstance(ref, dict) and "id" in ref:
                return owners.get(ref["id"], ref)
            return ref

        annotations = []
        for item in payload.get("annotations") or ():
            if not isinstance(item, dict):
                continue
            ann_cls = _annotation_class(item)
            if ann_cls is None:
                logger.warning("Skipping unsupported annotation %s", item.get("class"))
                continue
            item = dict(item)
            item["owner"] = _resolve(item.get("owner"))
            if isinstance(item.get("link"), dict):
                link_owner = _resolve(item["link"].get("owner"))
                item["link"] = {**item["link"], "owner": link_owner}
            try:
                annotations.append(ann_cls.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping invalid annotation %s: %s", item.get("id"), e)
        return cls(annotations=tuple(annotations))

    def of_type(self, cls: type[_A]) -> list[_A]:
        """Annotations of the given class, e.g. `group.of_type(MapAnnotation)`."""
        return [a for a in self.annotations if isinstance(a, cls)]

    def __len__(self) -> int:
        return len(self.annotations)
