from __future__ import annotations

from fastapi import Header, HTTPException, Request

from winning.settings import Settings


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _check_user(settings: Settings, x_user_id: str | None, x_backend_token: str | None) -> tuple[str | None, str | None]:
    """Return ``(user_id, None)`` or ``(None, reason)``; reason is ``token``, ``user`` or ``allowed``."""
    if not settings.backend_session_secret or x_backend_token != settings.backend_session_secret:
        return None, "token"
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None, "user"
    if settings.allowed_user_ids and user_id not in settings.allowed_user_ids:
        return None, "allowed"
    return user_id, None


async def require_user_id(
    request: Request,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_backend_token: str | None = Header(default=None, alias="X-Backend-Token"),
) -> str:
    user_id, reason = _check_user(app_settings(request), x_user_id, x_backend_token)
    if reason == "token":
        raise HTTPException(status_code=401, detail="Invalid backend token")
    if reason == "user":
        raise HTTPException(status_code=401, detail="Missing user id")
    if reason == "allowed":
        raise HTTPException(status_code=403, detail="User not allowed")
    return user_id


async def optional_user_id(
    request: Request,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_backend_token: str | None = Header(default=None, alias="X-Backend-Token"),
) -> str | None:
    user_id, _reason = _check_user(app_settings(request), x_user_id, x_backend_token)
    return user_id
