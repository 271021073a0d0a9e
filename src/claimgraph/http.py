from __future__ import annotations

import httpx


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0)


def default_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=50, max_keepalive_connections=10)


class HttpClientFactory:
    """Creates shared httpx clients with sane defaults.

    Keep one client per gateway; do not create per-request. No retry policy
    is attached: retries belong to the caller.
    """

    @staticmethod
    def client(
        base_url: str | None = None,
        headers: dict | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url or "",
            headers=headers,
            timeout=default_timeout(),
            limits=default_limits(),
            follow_redirects=True,
            transport=transport,
        )


def raise_for_status(r: httpx.Response, table_id: str = "", row_id: str = "") -> None:
    """Map 404/409 onto the shared error taxonomy, everything else to httpx."""
    from claimgraph.errors import RowConflictError, RowNotFoundError

    if r.status_code == 404:
        raise RowNotFoundError(table_id, row_id)
    if r.status_code == 409:
        raise RowConflictError(table_id, row_id)
    r.raise_for_status()
