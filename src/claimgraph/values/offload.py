"""
Large-object offload.

Oversized literals are uploaded to the bucket named by their datatype's
storage policy and replaced by a `{fileId, bucketId, url}` pointer envelope.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any

from claimgraph.storage.base import ObjectStorage

from .plugins import is_file_pointer
from .registry import PluginRegistry, serialize_for_size

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "application/geo+json": "geojson",
    "application/json": "json",
    "image/jpeg": "jpg",
    "image/png": "png",
}


def safe_filename(label: str, mime_type: str) -> str:
    base = re.sub(r"[^a-zA-Z0-9]", "_", label or "value")
    ext = _EXTENSIONS.get(mime_type, "bin")
    return f"{base}_{int(time.time() * 1000)}.{ext}"


class ValueOffloader:
    def __init__(self, registry: PluginRegistry, storage: ObjectStorage | None):
        self.registry = registry
        self.storage = storage

    def needs_offload(self, envelope: dict[str, Any] | None) -> bool:
        if not envelope or is_file_pointer(envelope.get("data")):
            return False
        return self.registry.should_upload_to_bucket(envelope.get("datatype") or "string", envelope.get("data"))

    async def offload(
        self,
        envelope: dict[str, Any] | None,
        *,
        label: str = "value",
        permissions: list[str] | None = None,
    ) -> dict[str, Any] | None:
        """Return the envelope unchanged, or a pointer envelope after upload."""
        if envelope is None or not self.needs_offload(envelope):
            return envelope
        datatype = envelope.get("datatype") or "string"
        policy = self.registry.get_storage_config(datatype)
        if policy is None:
            return envelope
        if self.storage is None:
            logger.warning("no object storage configured; keeping %s value inline", datatype)
            return envelope

        content = serialize_for_size(envelope.get("data")).encode("utf-8")
        stored = await self.storage.create_file(
            policy.bucket_id,
            uuid.uuid4().hex,
            content,
            filename=safe_filename(label, policy.mime_type),
            mime_type=policy.mime_type,
            permissions=permissions or None,
        )
        logger.info(
            "offloaded %s value (%d chars > %d) to %s/%s",
            datatype,
            len(content),
            policy.threshold,
            stored.bucket_id,
            stored.file_id,
        )
        return {"datatype": datatype, "data": stored.pointer()}

    async def resolve(self, envelope: dict[str, Any] | None) -> dict[str, Any] | None:
        """Inline a pointer envelope again by downloading its bytes."""
        if not envelope or not is_file_pointer(envelope.get("data")) or self.storage is None:
            return envelope
        pointer = envelope["data"]
        raw = (await self.storage.read_file(pointer["bucketId"], pointer["fileId"])).decode("utf-8")
        try:
            data: Any = json.loads(raw)
        except ValueError:
            data = raw
        return {"datatype": envelope.get("datatype") or "string", "data": data}

    async def discard(self, envelopes: list[dict[str, Any] | None]) -> None:
        """Best-effort removal of uploaded files whose row never committed."""
        if self.storage is None:
            return
        for env in envelopes:
            data = (env or {}).get("data")
            if not is_file_pointer(data):
                continue
            try:
                await self.storage.delete_file(data["bucketId"], data["fileId"])
            except Exception:
                logger.exception("failed to discard orphaned file %s/%s", data["bucketId"], data["fileId"])
