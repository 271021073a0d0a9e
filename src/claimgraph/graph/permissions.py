"""Permission descriptors in the row store's `verb("role")` notation."""

from __future__ import annotations


def _descriptor(verb: str, role: str) -> str:
    return f'{verb}("{role}")'


def team_role(team_id: str) -> str:
    return f"team:{team_id}"


def user_role(user_id: str) -> str:
    return f"user:{user_id}"


def generate_permissions(team_id: str | None) -> list[str]:
    """Update/delete rights for the owning team. No team means no descriptors."""
    if not team_id:
        return []
    role = team_role(team_id)
    return [_descriptor("update", role), _descriptor("delete", role)]


def audit_permissions(reviewer_team_id: str | None, user_id: str | None) -> list[str]:
    """Reviewers can read and flip status; the acting user can read its own rows."""
    out: list[str] = []
    if reviewer_team_id:
        role = team_role(reviewer_team_id)
        out += [_descriptor("read", role), _descriptor("update", role)]
    if user_id:
        out.append(_descriptor("read", user_role(user_id)))
    return out
