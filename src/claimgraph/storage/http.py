from __future__ import annotations

import logging

import httpx

from claimgraph.http import HttpClientFactory, raise_for_status

from .base import StoredFile

logger = logging.getLogger(__name__)


class HttpObjectStorage:
    """Storage REST client (Appwrite-compatible bucket endpoints).

    Endpoints used:
      POST   /storage/buckets/{bucket}/files            multipart upload
      GET    /storage/buckets/{bucket}/files/{id}/view
      GET    /storage/buckets/{bucket}/files/{id}/download
      DELETE /storage/buckets/{bucket}/files/{id}
    """

    def __init__(
        self,
        endpoint: str,
        project: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.project = project
        headers = {}
        if project:
            headers["X-Appwrite-Project"] = project
        if api_key:
            headers["X-Appwrite-Key"] = api_key
        self._client = HttpClientFactory.client(base_url=self.endpoint, headers=headers, transport=transport)

    async def aclose(self):
        await self._client.aclose()

    def _file_url(self, bucket_id: str, file_id: str, kind: str) -> str:
        url = f"{self.endpoint}/storage/buckets/{bucket_id}/files/{file_id}/{kind}"
        if self.project:
            url += f"?project={self.project}"
        return url

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
        data: dict[str, object] = {"fileId": file_id}
        if permissions:
            data["permissions[]"] = permissions
        r = await self._client.post(
            f"/storage/buckets/{bucket_id}/files",
            data=data,
            files={"file": (filename, content, mime_type)},
        )
        raise_for_status(r, bucket_id, file_id)
        body = r.json()
        stored_id = body.get("$id") or file_id
        logger.info("uploaded %s (%d bytes) to bucket %s", stored_id, len(content), bucket_id)
        return StoredFile(
            file_id=stored_id,
            bucket_id=bucket_id,
            url=self.get_file_view(bucket_id, stored_id),
            name=body.get("name") or filename,
            size=int(body.get("sizeOriginal") or len(content)),
            mime_type=body.get("mimeType") or mime_type,
        )

    def get_file_view(self, bucket_id: str, file_id: str) -> str:
        return self._file_url(bucket_id, file_id, "view")

    def get_file_download(self, bucket_id: str, file_id: str) -> str:
        return self._file_url(bucket_id, file_id, "download")

    async def read_file(self, bucket_id: str, file_id: str) -> bytes:
        r = await self._client.get(f"/storage/buckets/{bucket_id}/files/{file_id}/download")
        raise_for_status(r, bucket_id, file_id)
        return r.content

    async def delete_file(self, bucket_id: str, file_id: str) -> None:
        r = await self._client.delete(f"/storage/buckets/{bucket_id}/files/{file_id}")
        raise_for_status(r, bucket_id, file_id)
