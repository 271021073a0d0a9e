"""
Tagged render descriptors.

Every datatype plugin answers with one of these; the rendering boundary is
this fixed vocabulary no matter how many datatypes are registered.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar


class DescriptorType(str, Enum):
    TEXT = "text"
    LINK = "link"
    COORDINATE = "coordinate"
    GEOMETRY = "geometry"
    GEOMETRY_FILE = "geometry-file"
    IMAGE = "image"
    IMAGE_THUMBNAIL = "image-thumbnail"
    BOOLEAN = "boolean"
    COLOR = "color"
    COLOR_LIST = "color-list"
    JSON = "json"
    JSON_FILE = "json-file"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RenderDescriptor:
    kind: ClassVar[DescriptorType] = DescriptorType.UNKNOWN

    @property
    def type(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass(frozen=True)
class TextDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.TEXT
    text: str


@dataclass(frozen=True)
class LinkDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.LINK
    url: str
    text: str


@dataclass(frozen=True)
class CoordinateDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.COORDINATE
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Bounds:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float


@dataclass(frozen=True)
class GeometryDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.GEOMETRY
    geometry_type: str
    coordinates: Any
    center: CoordinateDescriptor | None
    bounds: Bounds | None
    point_count: int


@dataclass(frozen=True)
class GeometryFileDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.GEOMETRY_FILE
    file_id: str
    bucket_id: str
    url: str | None
    geometry_type: str


@dataclass(frozen=True)
class ImageDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.IMAGE
    url: str
    thumbnail: str
    alt: str = "Image"
    caption: str | None = None
    file_id: str | None = None
    bucket_id: str | None = None


@dataclass(frozen=True)
class ImageThumbnailDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.IMAGE_THUMBNAIL
    url: str


@dataclass(frozen=True)
class BooleanDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.BOOLEAN
    value: bool


@dataclass(frozen=True)
class ColorDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.COLOR
    value: str
    display: str


@dataclass(frozen=True)
class ColorListDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.COLOR_LIST
    colors: tuple[ColorDescriptor, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class JsonDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.JSON
    data: Any
    formatted: str


@dataclass(frozen=True)
class JsonFileDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.JSON_FILE
    file_id: str
    bucket_id: str
    url: str | None


@dataclass(frozen=True)
class UnknownDescriptor(RenderDescriptor):
    kind: ClassVar[DescriptorType] = DescriptorType.UNKNOWN
    raw: Any = None


def as_descriptor(out: Any) -> RenderDescriptor:
    """Coerce plugin output into the descriptor vocabulary."""
    if isinstance(out, RenderDescriptor):
        return out
    if out is None:
        return UnknownDescriptor()
    return TextDescriptor(text=str(out))
