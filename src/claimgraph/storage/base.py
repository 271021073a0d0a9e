"""Object storage contract used for large-object offload."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StoredFile:
    file_id: str
    bucket_id: str
    url: str
    name: str
    size: int
    mime_type: str

    def pointer(self) -> dict[str, str]:
        """The `{fileId, bucketId, url}` shape kept inside a value envelope."""
        return {"fileId": self.file_id, "bucketId": self.bucket_id, "url": self.url}


class ObjectStorage(Protocol):
    """Abstraction for the bucket service holding detached literals."""

    async def create_file(
        self,
        bucket_id: str,
        file_id: str,
        content: bytes,
        *,
        filename: str,
        mime_type: str = "application/octet-stream",
        permissions: list[str] | None = None,
    ) -> StoredFile: ...

    def get_file_view(self, bucket_id: str, file_id: str) -> str: ...

    def get_file_download(self, bucket_id: str, file_id: str) -> str: ...

    async def read_file(self, bucket_id: str, file_id: str) -> bytes: ...

    async def delete_file(self, bucket_id: str, file_id: str) -> None: ...
