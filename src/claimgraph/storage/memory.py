from __future__ import annotations

from dataclasses import dataclass, field

from claimgraph.errors import RowConflictError, RowNotFoundError

from .base import StoredFile


@dataclass
class _Blob:
    meta: StoredFile
    content: bytes
    permissions: list[str] = field(default_factory=list)


class MemoryObjectStorage:
    """In-process bucket store; URLs point at `base_url`."""

    def __init__(self, base_url: str = "memory://storage"):
        self.base_url = base_url.rstrip("/")
        self._blobs: dict[tuple[str, str], _Blob] = {}

    async def create_file(
        self,
        bucket_id: str,
        file_id: str,
        content: bytes,
        *,
        filename: str,
        mime_type: str = "application/octet-stream",
        permissions: list[str] | None = None,
    ) -> StoredFile:
        key = (bucket_id, file_id)
        if key in self._blobs:
            raise RowConflictError(bucket_id, file_id)
        meta = StoredFile(
            file_id=file_id,
            bucket_id=bucket_id,
            url=self.get_file_view(bucket_id, file_id),
            name=filename,
            size=len(content),
            mime_type=mime_type,
        )
        self._blobs[key] = _Blob(meta=meta, content=bytes(content), permissions=list(permissions or []))
        return meta

    def get_file_view(self, bucket_id: str, file_id: str) -> str:
        return f"{self.base_url}/buckets/{bucket_id}/files/{file_id}/view"

    def get_file_download(self, bucket_id: str, file_id: str) -> str:
        return f"{self.base_url}/buckets/{bucket_id}/files/{file_id}/download"

    async def read_file(self, bucket_id: str, file_id: str) -> bytes:
        blob = self._blobs.get((bucket_id, file_id))
        if blob is None:
            raise RowNotFoundError(bucket_id, file_id)
        return blob.content

    async def delete_file(self, bucket_id: str, file_id: str) -> None:
        if self._blobs.pop((bucket_id, file_id), None) is None:
            raise RowNotFoundError(bucket_id, file_id)

    def files(self, bucket_id: str | None = None) -> list[StoredFile]:
        return [b.meta for (bkt, _), b in self._blobs.items() if bucket_id is None or bkt == bucket_id]
