"""Models of the entities exposed by an OMERO server.

The JSON API (`/api/v0/m/...`), the webclient API (`/webclient/api/...`) and
the webgateway (`/webgateway/imgData/...`) all describe the same entities with
different key names.  Each model normalizes every known shape in a
`mode="before"` validator, so callers only ever see one representation.

Identity fields (`id`) are required: a payload without one fails validation.
Every other field fails soft and falls back to its default.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, TypeAlias

import numpy as np
from pydantic import (
    Field,
    SecretStr,
    ValidationError,
    ValidatorFunctionWrapHandler,
    WrapValidator,
    field_validator,
    model_validator,
)

from yaomero._base import _BaseModel, _FrozenModel

__all__ = [
    "Channel",
    "Credentials",
    "Dataset",
    "Group",
    "Image",
    "OrphanedFolder",
    "Owner",
    "PixelType",
    "Project",
    "RepositoryEntity",
    "Server",
    "ServerEntity",
    "TileRequest",
    "attributes",
    "child_kind",
    "has_children",
    "label",
]

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Soft fields
# ------------------------------------------------------------------------------


def _soft(default: Any) -> WrapValidator:
    """Validator replacing an invalid value by `default` instead of failing."""

    def _validate(value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        try:
            return handler(value)
        except ValidationError as e:
            logger.warning("Ignoring invalid value %r: %s", value, e.errors()[0]["msg"])
            return default

    return WrapValidator(_validate)


SoftStr: TypeAlias = Annotated[str, _soft("")]
SoftInt: TypeAlias = Annotated[int, _soft(0)]
SoftPositiveInt: TypeAlias = Annotated[int, Field(ge=1), _soft(1)]
SoftFloat: TypeAlias = Annotated[float | None, _soft(None)]


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the value of the first key present in `data`."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    """Drop absent values so that fields fall back to their defaults."""
    return {k: v for k, v in data.items() if v is not None}


def _unwrap(value: Any, key: str = "Value") -> Any:
    """JSON API quantities and enums are objects, e.g. {"Value": 0.3, "Unit": ...}."""
    if isinstance(value, dict):
        return value.get(key, value.get(key.lower()))
    return value


# ------------------------------------------------------------------------------
# Pixel types
# ------------------------------------------------------------------------------


class PixelType(str, Enum):
    """Pixel types, named as the OMERO server names them."""

    UINT8 = "uint8"
    INT8 = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float"
    FLOAT64 = "double"

    @classmethod
    def _missing_(cls, value: object) -> PixelType | None:
        if isinstance(value, str):
            value = value.lower()
            aliases = {"float32": "float", "float64": "double"}
            value = aliases.get(value, value)
            for member in cls:
                if member.value == value:
                    return member
        return None

    @property
    def dtype(self) -> np.dtype:
        """Dtype of the raw pixel bytes, as sent by the server (big-endian)."""
        return np.dtype(_DTYPES[self])

    @property
    def is_supported(self) -> bool:
        """Whether raw buffers of this type can be decoded."""
        return self in _SUPPORTED_PIXEL_TYPES

    @property
    def bytes_per_pixel(self) -> int:
        return self.dtype.itemsize


_DTYPES = {
    PixelType.UINT8: ">u1",
    PixelType.INT8: ">i1",
    PixelType.UINT16: ">u2",
    PixelType.INT16: ">i2",
    PixelType.UINT32: ">u4",
    PixelType.INT32: ">i4",
    PixelType.FLOAT32: ">f4",
    PixelType.FLOAT64: ">f8",
}
_SUPPORTED_PIXEL_TYPES = frozenset(
    {
        PixelType.UINT8,
        PixelType.UINT16,
        PixelType.INT16,
        PixelType.INT32,
        PixelType.FLOAT32,
        PixelType.FLOAT64,
    }
)

# ------------------------------------------------------------------------------
# Credentials
# ------------------------------------------------------------------------------


class Credentials(_BaseModel):
    """Credentials used to log in.  Leave `username` empty to browse as public."""

    username: str | None = None
    password: SecretStr | None = None

    @property
    def is_public(self) -> bool:
        return not self.username


# ------------------------------------------------------------------------------
# Groups & owners
# ------------------------------------------------------------------------------

ALL_ID = -1


class Owner(_FrozenModel):
    """An OMERO user (experimenter)."""

    id: int
    first_name: SoftStr = ""
    middle_name: SoftStr = ""
    last_name: SoftStr = ""
    username: SoftStr = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return _compact({
                "id": _pick(data, "@id", "id"),
                "first_name": _pick(data, "FirstName", "firstName", "first_name"),
                "middle_name": _pick(data, "MiddleName", "middleName", "middle_name"),
                "last_name": _pick(data, "LastName", "lastName", "last_name"),
                "username": _pick(data, "UserName", "omeName", "username"),
            })
        return data

    @property
    def full_name(self) -> str:
        names = (self.first_name, self.middle_name, self.last_name)
        return " ".join(n for n in names if n) or self.username

    @property
    def is_all_members(self) -> bool:
        return self.id == ALL_ID

    @classmethod
    def all_members(cls) -> Owner:
        """The pseudo owner matching every owner."""
        return cls(id=ALL_ID, first_name="All members")


class Group(_FrozenModel):
    """An OMERO group, with the owners that belong to it."""

    id: int
    name: SoftStr = ""
    owners: tuple[Owner, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            owners = _pick(data, "owners", "experimenters", default=())
            return _compact({
                "id": _pick(data, "@id", "id"),
                "name": _pick(data, "Name", "name"),
                "owners": owners,
            })
        return data

    @property
    def is_all_groups(self) -> bool:
        return self.id == ALL_ID

    @classmethod
    def all_groups(cls) -> Group:
        """The pseudo group matching every group.  Never a real remote group."""
        return cls(id=ALL_ID, name="All groups")


class Server(_FrozenModel):
    """Root of the hierarchy: the groups and owners visible to a session.

    `groups[0]` is always the "all groups" pseudo group, and it appears
    exactly once.  Build instances with `Server.create`.
    """

    groups: tuple[Group, ...]
    owners: tuple[Owner, ...] = ()
    default_group: Group
    default_owner: Owner

    @field_validator("groups")
    @classmethod
    def _validate_groups(cls, groups: tuple[Group, ...]) -> tuple[Group, ...]:
        if not groups or not groups[0].is_all_groups:
            raise ValueError("The first group must be the 'all groups' group")
        if sum(g.is_all_groups for g in groups) != 1:
            raise ValueError("There must be exactly one 'all groups' group")
        return groups

    @classmethod
    def create(
        cls,
        groups: list[Group],
        owners: list[Owner],
        default_group: Group | None = None,
        default_owner: Owner | None = None,
    ) -> Server:
        real_groups = [g for g in groups if not g.is_all_groups]
        return cls(
            groups=(Group.all_groups(), *real_groups),
            owners=tuple(o for o in owners if not o.is_all_members),
            default_group=default_group or Group.all_groups(),
            default_owner=default_owner or Owner.all_members(),
        )

    def owners_of(self, group: Group) -> tuple[Owner, ...]:
        """Owners belonging to `group` (all owners for the pseudo group)."""
        if group.is_all_groups:
            return self.owners
        for g in self.groups:
            if g.id == group.id:
                return g.owners
        return ()


# ------------------------------------------------------------------------------
# Repository entities
# ------------------------------------------------------------------------------


def _details(data: dict) -> tuple[Any, Any]:
    """Extract (owner, group) payloads from the JSON API `omero:details` key."""
    details = data.get("omero:details") or {}
    owner = details.get("owner", data.get("owner"))
    group = details.get("group", data.get("group"))
    return owner, group


class _ServerEntityBase(_FrozenModel):
    id: int
    name: SoftStr = ""
    description: SoftStr = ""
    owner: Annotated[Owner | None, _soft(None)] = None
    group: Annotated[Group | None, _soft(None)] = None

    attribute_names: ClassVar[tuple[str, ...]] = (
        "Name",
        "Id",
        "Description",
        "Owner",
        "Group",
    )

    @staticmethod
    def _common(data: dict) -> dict[str, Any]:
        owner, group = _details(data)
        return {
            "id": _pick(data, "@id", "id"),
            "name": _pick(data, "Name", "name"),
            "description": _pick(data, "Description", "description"),
            "owner": owner,
            "group": group,
        }

    def _attribute_values(self) -> tuple[str, ...]:
        return (
            self.name,
            str(self.id),
            self.description or "-",
            self.owner.full_name if self.owner else "-",
            self.group.name if self.group else "-",
        )


class Project(_ServerEntityBase):
    type: Literal["project"] = "project"
    child_count: SoftInt = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            return _compact({
                **cls._common(data),
                "child_count": _pick(
                    data, "omero:childCount", "childCount", "child_count", default=0
                ),
            })
        return data


class Dataset(_ServerEntityBase):
    type: Literal["dataset"] = "dataset"
    child_count: SoftInt = 0

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data:
            return _compact({
                **cls._common(data),
                "child_count": _pick(
                    data, "omero:childCount", "childCount", "child_count", default=0
                ),
            })
        return data


class Channel(_FrozenModel):
    """One channel of an image: its name and display color."""

    name: SoftStr = ""
    color: Annotated[tuple[int, int, int], _soft((255, 255, 255))] = (255, 255, 255)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            color = _pick(data, "color", "Color")
            if color is None and "Red" in data:
                color = (data.get("Red"), data.get("Green"), data.get("Blue"))
            return _compact({
                "name": _pick(data, "label", "Name", "name", default=""),
                "color": color if color is not None else (255, 255, 255),
            })
        return data

    @field_validator("color", mode="before")
    @classmethod
    def _parse_color(cls, value: Any) -> Any:
        if isinstance(value, str):
            # webgateway: "FF0000"
            hexa = value.lstrip("#")
            try:
                return tuple(int(hexa[i : i + 2], 16) for i in (0, 2, 4))
            except ValueError:
                return value
        if isinstance(value, int):
            # JSON API: signed RGBA integer
            value &= 0xFFFFFFFF
            return ((value >> 24) & 0xFF, (value >> 16) & 0xFF, (value >> 8) & 0xFF)
        return value


class Image(_ServerEntityBase):
    """An image, with everything needed to read its pixels."""

    type: Literal["image"] = "image"
    acquisition_date: Annotated[str | None, _soft(None)] = None
    pixel_type: Annotated[PixelType | None, _soft(None)] = None
    channels: Annotated[tuple[Channel, ...], _soft(())] = ()
    size_x: SoftPositiveInt = 1
    size_y: SoftPositiveInt = 1
    size_z: SoftPositiveInt = 1
    size_t: SoftPositiveInt = 1
    n_levels: SoftPositiveInt = 1
    tile_width: Annotated[int | None, _soft(None)] = None
    tile_height: Annotated[int | None, _soft(None)] = None
    physical_size_x: SoftFloat = None
    physical_size_y: SoftFloat = None
    physical_size_z: SoftFloat = None

    attribute_names: ClassVar[tuple[str, ...]] = (
        *_ServerEntityBase.attribute_names,
        "Acquisition date",
        "Image width",
        "Image height",
        "Number of slices (z)",
        "Number of timepoints (t)",
        "Number of channels",
        "Pixel type",
        "Number of resolution levels",
        "Pixel size X",
        "Pixel size Y",
        "Pixel size Z",
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "type" in data:
            return data
        if "Pixels" in data or "@id" in data:
            return cls._from_json_api(data)
        if "meta" in data or "size" in data:
            return cls._from_img_data(data)
        return data

    @classmethod
    def _from_json_api(cls, data: dict) -> dict[str, Any]:
        pixels = data.get("Pixels") or {}
        channels = pixels.get("Channels")
        if channels is None:
            channels = [{} for _ in range(int(pixels.get("SizeC") or 0))]
        return _compact({
            **cls._common(data),
            "acquisition_date": _pick(data, "AcquisitionDate"),
            "pixel_type": _unwrap(pixels.get("Type"), "value"),
            "channels": channels,
            "size_x": pixels.get("SizeX", 1),
            "size_y": pixels.get("SizeY", 1),
            "size_z": pixels.get("SizeZ", 1),
            "size_t": pixels.get("SizeT", 1),
            "physical_size_x": _unwrap(pixels.get("PhysicalSizeX")),
            "physical_size_y": _unwrap(pixels.get("PhysicalSizeY")),
            "physical_size_z": _unwrap(pixels.get("PhysicalSizeZ")),
        })

    @classmethod
    def _from_img_data(cls, data: dict) -> dict[str, Any]:
        meta = data.get("meta") or {}
        size = data.get("size") or {}
        tile_size = data.get("tile_size") or {}
        pixel_size = data.get("pixel_size") or {}
        owner = None
        if meta.get("imageAuthorId") is not None:
            owner = {"id": meta["imageAuthorId"], "first_name": meta.get("imageAuthor")}
        return _compact({
            "id": _pick(data, "id", "@id"),
            "name": meta.get("imageName"),
            "description": meta.get("imageDescription"),
            "owner": owner,
            "acquisition_date": meta.get("imageTimestamp"),
            "pixel_type": meta.get("pixelsType"),
            "channels": data.get("channels", ()),
            "size_x": size.get("width", 1),
            "size_y": size.get("height", 1),
            "size_z": size.get("z", 1),
            "size_t": size.get("t", 1),
            "n_levels": data.get("levels", 1),
            "tile_width": tile_size.get("width"),
            "tile_height": tile_size.get("height"),
            "physical_size_x": pixel_size.get("x"),
            "physical_size_y": pixel_size.get("y"),
            "physical_size_z": pixel_size.get("z"),
        })

    @field_validator("acquisition_date", mode="before")
    @classmethod
    def _date_to_str(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @property
    def size_c(self) -> int:
        return len(self.channels)

    @property
    def is_supported(self) -> bool:
        """Whether the pixel type and channels of this image can be decoded."""
        return (
            self.pixel_type is not None
            and self.pixel_type.is_supported
            and self.size_c > 0
        )

    def _attribute_values(self) -> tuple[str, ...]:
        def _fmt(v: float | None) -> str:
            return "-" if v is None else f"{v:g} µm"

        return (
            *super()._attribute_values(),
            self.acquisition_date or "-",
            f"{self.size_x} px",
            f"{self.size_y} px",
            str(self.size_z),
            str(self.size_t),
            str(self.size_c),
            self.pixel_type.value if self.pixel_type else "-",
            str(self.n_levels),
            _fmt(self.physical_size_x),
            _fmt(self.physical_size_y),
            _fmt(self.physical_size_z),
        )


class OrphanedFolder(_FrozenModel):
    """Synthetic container of the images that belong to no dataset.

    It has no remote identity.
    """

    type: Literal["orphaned_folder"] = "orphaned_folder"
    name: str = "Orphaned Images"


ServerEntity: TypeAlias = Project | Dataset | Image
RepositoryEntity: TypeAlias = Annotated[
    Project | Dataset | Image | OrphanedFolder, Field(discriminator="type")
]

EntityKind: TypeAlias = Literal["project", "dataset", "image"]


def label(entity: Project | Dataset | Image | OrphanedFolder) -> str:
    """Text to display for an entity."""
    match entity:
        case OrphanedFolder(name=name):
            return name
        case Project() | Dataset() | Image():
            return entity.name or f"{entity.type.capitalize()} {entity.id}"
    raise TypeError(f"Not a repository entity: {entity!r}")  # pragma: no cover


def has_children(entity: Project | Dataset | Image | OrphanedFolder) -> bool:
    """Whether an entity may have children (possibly not loaded yet)."""
    match entity:
        case Project(child_count=n) | Dataset(child_count=n):
            return n > 0
        case Image():
            return False
        case OrphanedFolder():
            return True
    raise TypeError(f"Not a repository entity: {entity!r}")  # pragma: no cover


def child_kind(
    entity: Project | Dataset | Image | OrphanedFolder | None,
) -> EntityKind | None:
    """Kind of the children of an entity (None: the server root)."""
    match entity:
        case None:
            return "project"
        case Project():
            return "dataset"
        case Dataset() | OrphanedFolder():
            return "image"
        case Image():
            return None
    raise TypeError(f"Not a repository entity: {entity!r}")  # pragma: no cover


def attributes(entity: Project | Dataset | Image) -> list[tuple[str, str]]:
    """(name, value) pairs describing a server entity, for display."""
    match entity:
        case Project() | Dataset() | Image():
            return list(zip(entity.attribute_names, entity._attribute_values()))
    raise TypeError(f"Not a server entity: {entity!r}")


# ------------------------------------------------------------------------------
# Tile requests
# ------------------------------------------------------------------------------


class TileRequest(_FrozenModel):
    """Identifies one tile of one image plane.

    Equality is structural, so instances can be used as cache keys.
    Level 0 is the full resolution level.
    """

    image_id: int
    level: int = Field(default=0, ge=0)
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    z: int = Field(default=0, ge=0)
    t: int = Field(default=0, ge=0)

    def __str__(self) -> str:
        return (
            f"Tile(image={self.image_id}, level={self.level}, "
            f"x={self.x}, y={self.y}, w={self.width}, h={self.height}, "
            f"z={self.z}, t={self.t})"
        )
