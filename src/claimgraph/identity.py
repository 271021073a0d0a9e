"""
Identity/team gateway.

Supplies the acting user that stamps audit rows. Lookups are best effort:
callers treat a failed lookup as an anonymous actor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx

from claimgraph.http import HttpClientFactory

if TYPE_CHECKING:
    from claimgraph.settings import ClaimGraphSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    user_id: str
    email: str | None = None
    name: str | None = None


class IdentityProvider(Protocol):
    async def current_identity(self) -> Identity | None: ...


class StaticIdentityProvider:
    """Fixed identity, e.g. a service account or the CLI operator."""

    def __init__(self, identity: Identity | None = None):
        self.identity = identity

    async def current_identity(self) -> Identity | None:
        return self.identity


class HttpIdentityProvider:
    """Resolves the session user through `GET /account` with a JWT."""

    def __init__(
        self,
        endpoint: str,
        project: str | None = None,
        jwt: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {}
        if project:
            headers["X-Appwrite-Project"] = project
        if jwt:
            headers["X-Appwrite-JWT"] = jwt
        self._client = HttpClientFactory.client(base_url=endpoint.rstrip("/"), headers=headers, transport=transport)

    async def aclose(self):
        await self._client.aclose()

    async def current_identity(self) -> Identity | None:
        r = await self._client.get("/account")
        if r.status_code == 401:
            return None
        r.raise_for_status()
        body = r.json()
        return Identity(user_id=body["$id"], email=body.get("email"), name=body.get("name"))


def build_identity_provider(cfg: ClaimGraphSettings) -> IdentityProvider:
    if cfg.identity_endpoint:
        return HttpIdentityProvider(cfg.identity_endpoint, project=cfg.storage_project, jwt=cfg.identity_jwt)
    if cfg.static_user_id:
        return StaticIdentityProvider(Identity(user_id=cfg.static_user_id, email=cfg.static_user_email))
    return StaticIdentityProvider(None)
