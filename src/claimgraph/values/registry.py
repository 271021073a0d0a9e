"""
Typed value registry.

Maps a datatype tag to the plugin that renders it and to the storage policy
that decides whether a literal is kept inline or offloaded to a bucket.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from claimgraph.errors import ValidationError

from .descriptors import RenderDescriptor, TextDescriptor, as_descriptor

logger = logging.getLogger(__name__)

DEFAULT_INLINE_CHARS = 10000
PREVIEW_CHARS = 50


@dataclass(frozen=True)
class StoragePolicy:
    """Where the bytes of an oversized literal live."""

    bucket_id: str
    max_inline_chars: int | None = None
    max_size_bytes: int | None = None
    mime_type: str = "application/json"
    allowed_mime_types: tuple[str, ...] = ()

    @property
    def threshold(self) -> int:
        return self.max_inline_chars or self.max_size_bytes or DEFAULT_INLINE_CHARS


@dataclass(frozen=True)
class DatatypePlugin:
    """One explicit registration: datatype tags -> render/preview/storage."""

    name: str
    datatypes: tuple[str, ...]
    render: Callable[..., Any]
    preview: Callable[..., Any] | None = None
    priority: int = 0
    storage: StoragePolicy | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def do_preview(self, data: Any, **opts: Any) -> Any:
        fn = self.preview or self.render
        return fn(data, **opts)


def serialize_for_size(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _value_parts(value: Any) -> tuple[str, Any]:
    """Split an envelope (mapping or object) into (datatype, data)."""
    if isinstance(value, dict):
        return value.get("datatype") or "string", value.get("data")
    datatype = getattr(value, "datatype", None)
    if datatype is not None:
        return datatype or "string", getattr(value, "data", None)
    return "string", value


class PluginRegistry:
    """Priority-resolved dispatch table from datatype tag to plugin."""

    def __init__(self):
        self._plugins: dict[str, DatatypePlugin] = {}
        self._default: DatatypePlugin | None = None

    def register(self, plugin: DatatypePlugin) -> "PluginRegistry":
        if not plugin.name:
            raise ValidationError("plugin must have a name")
        if not plugin.datatypes:
            raise ValidationError(f"plugin {plugin.name!r} must declare datatypes")
        if not callable(plugin.render):
            raise ValidationError(f"plugin {plugin.name!r} must have a render function")

        for datatype in plugin.datatypes:
            existing = self._plugins.get(datatype)
            # strictly higher priority wins; ties keep the first registration
            if existing is None or existing.priority < plugin.priority:
                self._plugins[datatype] = plugin
            else:
                logger.debug(
                    "datatype %s stays with plugin %s (priority %d >= %d)",
                    datatype,
                    existing.name,
                    existing.priority,
                    plugin.priority,
                )
        return self

    def set_default(self, plugin: DatatypePlugin) -> "PluginRegistry":
        self._default = plugin
        return self

    def get_plugin(self, datatype: str) -> DatatypePlugin | None:
        return self._plugins.get(datatype) or self._default

    def render(self, value: Any, **opts: Any) -> RenderDescriptor | None:
        if value is None:
            return None
        datatype, data = _value_parts(value)
        plugin = self.get_plugin(datatype)
        if plugin is None:
            return TextDescriptor(text=_stringify(data if data is not None else value))
        out = plugin.render(data, **{**plugin.options, **opts, "datatype": datatype, "full_value": value})
        return as_descriptor(out)

    def preview(self, value: Any, **opts: Any) -> RenderDescriptor | None:
        if value is None:
            return None
        datatype, data = _value_parts(value)
        plugin = self.get_plugin(datatype)
        if plugin is None:
            text = _stringify(data if data is not None else value)
            if len(text) > PREVIEW_CHARS:
                text = text[:PREVIEW_CHARS] + "..."
            return TextDescriptor(text=text)
        out = plugin.do_preview(data, **{**plugin.options, **opts, "datatype": datatype, "full_value": value})
        return as_descriptor(out)

    def list_datatypes(self) -> list[str]:
        return list(self._plugins.keys())

    def list_plugins(self) -> list[dict[str, Any]]:
        seen: set[str] = set()
        out: list[dict[str, Any]] = []
        for plugin in self._plugins.values():
            if plugin.name in seen:
                continue
            seen.add(plugin.name)
            out.append({"name": plugin.name, "datatypes": self.get_datatypes_for_plugin(plugin.name)})
        return out

    def get_datatypes_for_plugin(self, plugin_name: str) -> list[str]:
        return [dt for dt, p in self._plugins.items() if p.name == plugin_name]

    def get_storage_config(self, datatype: str) -> StoragePolicy | None:
        plugin = self.get_plugin(datatype)
        return plugin.storage if plugin else None

    def get_bucket_id(self, datatype: str) -> str | None:
        policy = self.get_storage_config(datatype)
        return policy.bucket_id if policy else None

    def should_upload_to_bucket(self, datatype: str, value: Any) -> bool:
        policy = self.get_storage_config(datatype)
        if policy is None:
            return False
        return len(serialize_for_size(value)) > policy.threshold


def _stringify(data: Any) -> str:
    if isinstance(data, (dict, list)):
        return json.dumps(data, ensure_ascii=False)
    return str(data)
