from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from winning.auth import app_settings, optional_user_id
from winning.context import RequestContext, get_context
from winning.db import get_db
from winning.schemas import InviteAccept, InviteCreate
from winning import repositories

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/v1/circles/{circle_id}/invites")
async def create_invite(circle_id: str, payload: InviteCreate, ctx: RequestContext = Depends(get_context)):
    invite = await repositories.create_invite(
        ctx.db,
        circle_id,
        ctx.user_id,
        role=payload.role,
        ttl_hours=payload.ttl_hours or ctx.settings.invite_ttl_hours,
    )
    return {
        "token": invite["token"],
        "url": ctx.settings.invite_url(invite["token"]),
        "expires_at": invite["expires_at"],
    }


@router.post("/v1/invites/accept")
async def accept_invite(payload: InviteAccept, ctx: RequestContext = Depends(get_context)):
    circle_id = await repositories.accept_invite(ctx.db, payload.token, ctx.user_id)
    return {"circle_id": circle_id}


@router.get("/invite")
async def redeem_invite_link(
    request: Request,
    token: str = Query(""),
    user_id: str | None = Depends(optional_user_id),
):
    settings = app_settings(request)
    if not user_id:
        next_path = f"/invite?token={quote(token, safe='')}"
        return RedirectResponse(url=f"{settings.login_path}?next={quote(next_path, safe='')}", status_code=302)
    try:
        circle_id = await repositories.accept_invite(get_db(request), token, user_id)
    except ValueError as exc:
        logger.info("Invite redemption failed for %s: %s", user_id, exc)
        return JSONResponse(status_code=400, content={"error": str(exc)})
    return RedirectResponse(url=f"/c/{circle_id}", status_code=302)
