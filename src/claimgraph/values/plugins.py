"""
Built-in datatype plugins.

Each plugin is a plain set of functions plus one `DatatypePlugin`
registration record. `default_registry()` wires them all at startup.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from .descriptors import (
    BooleanDescriptor,
    Bounds,
    ColorDescriptor,
    ColorListDescriptor,
    CoordinateDescriptor,
    GeometryDescriptor,
    GeometryFileDescriptor,
    ImageDescriptor,
    ImageThumbnailDescriptor,
    JsonDescriptor,
    JsonFileDescriptor,
    LinkDescriptor,
    TextDescriptor,
)
from .registry import DatatypePlugin, PluginRegistry, StoragePolicy

if TYPE_CHECKING:
    from claimgraph.settings import ClaimGraphSettings


def is_file_pointer(data: Any) -> bool:
    return isinstance(data, dict) and bool(data.get("fileId")) and bool(data.get("bucketId"))


# --- text ---------------------------------------------------------------


def render_text(data: Any, **opts: Any) -> TextDescriptor | None:
    if data is None:
        return None
    if isinstance(data, (dict, list)):
        return TextDescriptor(text=json.dumps(data, ensure_ascii=False))
    return TextDescriptor(text=str(data))


def preview_text(data: Any, **opts: Any) -> TextDescriptor | None:
    out = render_text(data)
    if out is None:
        return None
    max_length = opts.get("max_length") or 50
    if len(out.text) > max_length:
        return TextDescriptor(text=out.text[:max_length] + "...")
    return out


TEXT_PLUGIN = DatatypePlugin(
    name="text",
    datatypes=(
        "string",
        "text",
        "number",
        "quantity",
        "date",
        "time",
        "external-id",
        "monolingualtext",
    ),
    render=render_text,
    preview=preview_text,
)


# --- url ----------------------------------------------------------------


def render_link(data: Any, **opts: Any) -> LinkDescriptor | TextDescriptor | None:
    if data is None:
        return None
    if isinstance(data, dict):
        url = data.get("url")
        text = data.get("text") or data.get("label") or url
    else:
        url = str(data).strip()
        text = url
    if not url:
        return None
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*:", url):
        return TextDescriptor(text=url)
    return LinkDescriptor(url=url, text=text)


URL_PLUGIN = DatatypePlugin(name="url", datatypes=("url", "uri", "link"), render=render_link)


# --- coordinate ---------------------------------------------------------


def parse_coordinate(data: Any) -> tuple[float, float] | None:
    """Accept {latitude, longitude}, {lat, lng|lon}, [lat, lng] or "lat,lng"."""
    try:
        if isinstance(data, dict):
            lat = data.get("latitude", data.get("lat"))
            lng = data.get("longitude", data.get("lng", data.get("lon")))
            if lat is None or lng is None:
                return None
            return float(lat), float(lng)
        if isinstance(data, (list, tuple)) and len(data) == 2:
            return float(data[0]), float(data[1])
        if isinstance(data, str):
            parts = [p.strip() for p in data.split(",")]
            if len(parts) == 2:
                return float(parts[0]), float(parts[1])
    except (TypeError, ValueError):
        return None
    return None


def render_coordinate(data: Any, **opts: Any) -> CoordinateDescriptor | TextDescriptor | None:
    if data is None:
        return None
    parsed = parse_coordinate(data)
    if parsed is None:
        return TextDescriptor(text=str(data))
    return CoordinateDescriptor(latitude=parsed[0], longitude=parsed[1])


COORDINATE_PLUGIN = DatatypePlugin(
    name="coordinate",
    datatypes=("coordinate", "globe-coordinate", "location"),
    render=render_coordinate,
)


# --- boolean ------------------------------------------------------------

_TRUE = {"true", "yes", "1", "y", "si", "sí"}
_FALSE = {"false", "no", "0", "n"}


def render_boolean(data: Any, **opts: Any) -> BooleanDescriptor | TextDescriptor | None:
    if data is None:
        return None
    if isinstance(data, bool):
        return BooleanDescriptor(value=data)
    if isinstance(data, (int, float)):
        return BooleanDescriptor(value=bool(data))
    s = str(data).strip().lower()
    if s in _TRUE:
        return BooleanDescriptor(value=True)
    if s in _FALSE:
        return BooleanDescriptor(value=False)
    return TextDescriptor(text=str(data))


BOOLEAN_PLUGIN = DatatypePlugin(name="boolean", datatypes=("boolean", "bool"), render=render_boolean)


# --- color --------------------------------------------------------------


def normalize_color(value: Any) -> ColorDescriptor | None:
    if value is None:
        return None
    color = str(value).strip()
    if not color:
        return None
    if not color.startswith("#") and not color.startswith("rgb"):
        color = f"#{color}"
    return ColorDescriptor(value=color, display=color)


def parse_colors(data: Any) -> list[ColorDescriptor]:
    if data is None:
        return []
    if isinstance(data, (list, tuple)):
        return [c for c in (normalize_color(x) for x in data) if c]

    # explicit separators for several colors: | ; or newline
    parts = [p.strip() for p in re.split(r"[|;\n]+", str(data)) if p.strip()]
    if len(parts) > 1:
        return [c for c in (normalize_color(p) for p in parts) if c]
    single = normalize_color(data)
    return [single] if single else []


def render_color(data: Any, **opts: Any) -> ColorDescriptor | ColorListDescriptor | None:
    colors = parse_colors(data)
    if not colors:
        return None
    if len(colors) == 1:
        return colors[0]
    return ColorListDescriptor(colors=tuple(colors))


COLOR_PLUGIN = DatatypePlugin(name="color", datatypes=("color", "rgb", "hex"), render=render_color)


# --- image --------------------------------------------------------------


def thumbnail_url(url: str) -> str:
    if "commons.wikimedia.org" in url:
        return url.replace("/commons/", "/commons/thumb/") + "/120px-thumbnail.jpg"
    return url


def _image_url(data: Any) -> str | None:
    if isinstance(data, str):
        return data
    if is_file_pointer(data):
        return data.get("url") or f"/api/files/{data['bucketId']}/{data['fileId']}"
    if isinstance(data, dict):
        return data.get("url")
    return None


def render_image(data: Any, **opts: Any) -> ImageDescriptor | None:
    if data is None:
        return None
    url = _image_url(data)
    if not url:
        return None
    full = opts.get("full_value")
    full = full if isinstance(full, dict) else {}
    pointer = data if isinstance(data, dict) else {}
    return ImageDescriptor(
        url=url,
        thumbnail=thumbnail_url(url),
        alt=full.get("alt") or full.get("label") or "Image",
        caption=full.get("caption"),
        file_id=pointer.get("fileId"),
        bucket_id=pointer.get("bucketId"),
    )


def preview_image(data: Any, **opts: Any) -> ImageThumbnailDescriptor | None:
    if data is None:
        return None
    url = _image_url(data)
    if not url:
        return None
    return ImageThumbnailDescriptor(url=thumbnail_url(url))


def image_plugin(bucket_id: str) -> DatatypePlugin:
    return DatatypePlugin(
        name="image",
        datatypes=("image", "photo", "picture", "media"),
        render=render_image,
        preview=preview_image,
        storage=StoragePolicy(
            bucket_id=bucket_id,
            max_size_bytes=10 * 1024 * 1024,
            mime_type="image/jpeg",
            allowed_mime_types=("image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml"),
        ),
    )


# --- json ---------------------------------------------------------------


def render_json(data: Any, **opts: Any) -> JsonDescriptor | JsonFileDescriptor | None:
    if data is None:
        return None
    if is_file_pointer(data):
        return JsonFileDescriptor(file_id=data["fileId"], bucket_id=data["bucketId"], url=data.get("url"))
    return JsonDescriptor(data=data, formatted=json.dumps(data, indent=2, ensure_ascii=False))


def preview_json(data: Any, **opts: Any) -> TextDescriptor | JsonFileDescriptor | None:
    if data is None:
        return None
    if is_file_pointer(data):
        return render_json(data)
    s = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    max_length = opts.get("max_length") or 50
    return TextDescriptor(text=s[:max_length] + "..." if len(s) > max_length else s)


def json_plugin(bucket_id: str) -> DatatypePlugin:
    return DatatypePlugin(
        name="json",
        datatypes=("json", "object", "array"),
        render=render_json,
        preview=preview_json,
        priority=-1,
        storage=StoragePolicy(bucket_id=bucket_id, max_inline_chars=1000, mime_type="application/json"),
    )


# --- polygon ------------------------------------------------------------


def flatten_points(coords: Any) -> list[tuple[float, float]]:
    points: list[tuple[float, float]] = []

    def walk(arr: Any) -> None:
        if not isinstance(arr, (list, tuple)):
            return
        if (
            len(arr) == 2
            and isinstance(arr[0], (int, float))
            and isinstance(arr[1], (int, float))
            and not isinstance(arr[0], bool)
        ):
            points.append((float(arr[0]), float(arr[1])))
            return
        for item in arr:
            walk(item)

    walk(coords)
    return points


def calculate_center(coords: Any) -> CoordinateDescriptor | None:
    points = flatten_points(coords)
    if not points:
        return None
    # GeoJSON order is [lng, lat]
    lat = sum(p[1] for p in points) / len(points)
    lng = sum(p[0] for p in points) / len(points)
    return CoordinateDescriptor(latitude=lat, longitude=lng)


def calculate_bounds(coords: Any) -> Bounds | None:
    points = flatten_points(coords)
    if not points:
        return None
    lats = [p[1] for p in points]
    lngs = [p[0] for p in points]
    return Bounds(
        min_latitude=min(lats),
        max_latitude=max(lats),
        min_longitude=min(lngs),
        max_longitude=max(lngs),
    )


def _extract_coordinates(data: Any) -> Any:
    if isinstance(data, dict):
        if "coordinates" in data:
            return data["coordinates"]
        geometry = data.get("geometry")
        if isinstance(geometry, dict) and "coordinates" in geometry:
            return geometry["coordinates"]
    return data


def render_polygon(
    data: Any, **opts: Any
) -> GeometryDescriptor | GeometryFileDescriptor | TextDescriptor | None:
    if data is None:
        return None
    datatype = opts.get("datatype") or "polygon"

    if is_file_pointer(data):
        return GeometryFileDescriptor(
            file_id=data["fileId"],
            bucket_id=data["bucketId"],
            url=data.get("url"),
            geometry_type=datatype,
        )

    coords = data
    if isinstance(data, str):
        try:
            coords = _extract_coordinates(json.loads(data))
        except ValueError:
            return TextDescriptor(text=data)
    else:
        coords = _extract_coordinates(data)

    if not isinstance(coords, list):
        return TextDescriptor(text=str(data))

    return GeometryDescriptor(
        geometry_type=datatype,
        coordinates=coords,
        center=calculate_center(coords),
        bounds=calculate_bounds(coords),
        point_count=len(flatten_points(coords)),
    )


def preview_polygon(data: Any, **opts: Any) -> Any:
    if is_file_pointer(data):
        return render_polygon(data, **opts)
    out = render_polygon(data, **opts)
    if isinstance(out, GeometryDescriptor) and out.point_count:
        return TextDescriptor(text=f"Polygon ({out.point_count} points)")
    return out


def polygon_plugin(bucket_id: str, max_inline_chars: int = 10000) -> DatatypePlugin:
    return DatatypePlugin(
        name="polygon",
        datatypes=("polygon", "multipolygon", "linestring", "geometry", "geojson"),
        render=render_polygon,
        preview=preview_polygon,
        storage=StoragePolicy(
            bucket_id=bucket_id,
            max_inline_chars=max_inline_chars,
            mime_type="application/geo+json",
        ),
    )


def default_registry(cfg: ClaimGraphSettings | None = None) -> PluginRegistry:
    """Build the registry used by the statement store and the service."""
    if cfg is None:
        from claimgraph.settings import settings as cfg

    return (
        PluginRegistry()
        .register(TEXT_PLUGIN)
        .register(URL_PLUGIN)
        .register(COORDINATE_PLUGIN)
        .register(BOOLEAN_PLUGIN)
        .register(COLOR_PLUGIN)
        .register(image_plugin(cfg.bucket_images))
        .register(json_plugin(cfg.bucket_json))
        .register(polygon_plugin(cfg.bucket_geojson, cfg.default_inline_chars))
    )
