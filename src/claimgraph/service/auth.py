from __future__ import annotations

from fastapi import Header, HTTPException

from claimgraph.settings import settings


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    if not settings.api_key:
        return
    if (x_api_key or "") != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def team_context(x_team_id: str | None = Header(default=None)) -> str | None:
    """Team owning rows created by this request."""
    return x_team_id or None
