"""Yet another OMERO client."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("yaomero")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "uninstalled"

from . import pixelapis
from ._annotations import (
    Annotation,
    AnnotationGroup,
    CommentAnnotation,
    FileAnnotation,
    MapAnnotation,
    RatingAnnotation,
    TagAnnotation,
)
from ._apis import ApisHandler
from ._cache import LRUCache
from ._client import Client, ImageSession
from ._entities import (
    Channel,
    Credentials,
    Dataset,
    Group,
    Image,
    OrphanedFolder,
    Owner,
    PixelType,
    Project,
    RepositoryEntity,
    Server,
    ServerEntity,
    TileRequest,
    attributes,
    child_kind,
    has_children,
    label,
)
from ._errors import (
    AuthenticationError,
    ClosedError,
    DecodeError,
    HttpError,
    NetworkError,
    OmeroError,
    TileReadError,
    UnsupportedAPIError,
)
from ._hierarchy import (
    Hierarchy,
    HierarchyFilter,
    HierarchyNode,
    LoadState,
    visible_children,
)
from ._inflight import InFlight
from ._settings import ClientSettings
from ._state import ClientState, StateStore
from ._sync import SyncClient, SyncImageSession
from ._transport import Session
from .pixelapis import PixelAPIRegistry

__all__ = [
    "Annotation",
    "AnnotationGroup",
    "ApisHandler",
    "AuthenticationError",
    "Channel",
    "Client",
    "ClientSettings",
    "ClientState",
    "ClosedError",
    "CommentAnnotation",
    "Credentials",
    "Dataset",
    "DecodeError",
    "FileAnnotation",
    "Group",
    "Hierarchy",
    "HierarchyFilter",
    "HierarchyNode",
    "HttpError",
    "Image",
    "ImageSession",
    "InFlight",
    "LRUCache",
    "LoadState",
    "MapAnnotation",
    "NetworkError",
    "OmeroError",
    "OrphanedFolder",
    "Owner",
    "PixelAPIRegistry",
    "PixelType",
    "Project",
    "RatingAnnotation",
    "RepositoryEntity",
    "Server",
    "ServerEntity",
    "Session",
    "StateStore",
    "SyncClient",
    "SyncImageSession",
    "TagAnnotation",
    "TileReadError",
    "TileRequest",
    "UnsupportedAPIError",
    "attributes",
    "child_kind",
    "has_children",
    "label",
    "pixelapis",
    "visible_children",
]
