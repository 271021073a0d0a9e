"""Object storage gateways."""

from .base import ObjectStorage, StoredFile
from .http import HttpObjectStorage
from .memory import MemoryObjectStorage

__all__ = ["ObjectStorage", "StoredFile", "HttpObjectStorage", "MemoryObjectStorage"]
