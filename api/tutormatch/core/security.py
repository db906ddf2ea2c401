from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from tutormatch.core.auth import Principal
from tutormatch.core.config import Settings, get_settings

CANDIDATE_SCOPES = {"postings:read", "applications:apply", "applications:withdraw"}
REQUESTER_SCOPES = {"postings:read", "postings:write"}

ROLE_SCOPES: dict[str, set[str]] = {
    "candidate": CANDIDATE_SCOPES,
    "requester": REQUESTER_SCOPES,
    "admin": CANDIDATE_SCOPES
    | REQUESTER_SCOPES
    | {
        "postings:admin",
        "applications:review",
        "withdrawals:resolve",
        "notifications:read",
        "notifications:write",
    },
}
DEFAULT_ROLE = "candidate"


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)
    if role not in ROLE_SCOPES:
        role = DEFAULT_ROLE

    return Principal(
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=user_id,
        display_name=_resolve_display_name(user),
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    # app_metadata takes precedence over user_metadata.
    for key in ("app_metadata", "user_metadata"):
        metadata = user.get(key)
        if isinstance(metadata, dict):
            role = metadata.get("role")
            if isinstance(role, str) and role:
                return role
    return DEFAULT_ROLE


def _resolve_display_name(user: dict[str, Any]) -> str | None:
    user_metadata = user.get("user_metadata")
    if isinstance(user_metadata, dict):
        for key in ("full_name", "name"):
            value = user_metadata.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    email = user.get("email")
    if isinstance(email, str) and email:
        return email
    return None
