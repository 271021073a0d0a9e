"""Typed value registry: rendering and storage offload per datatype."""

from .descriptors import DescriptorType, RenderDescriptor
from .offload import ValueOffloader
from .plugins import default_registry, is_file_pointer
from .registry import DatatypePlugin, PluginRegistry, StoragePolicy

__all__ = [
    "DescriptorType",
    "RenderDescriptor",
    "ValueOffloader",
    "default_registry",
    "is_file_pointer",
    "DatatypePlugin",
    "PluginRegistry",
    "StoragePolicy",
]
