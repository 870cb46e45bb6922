from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from winning.auth import optional_user_id
from winning.context import RequestContext, get_context
from winning.db import get_db
from winning import repositories
from winning.services import circle_views

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/circle")
@router.post("/api/circles")
async def create_circle_api(request: Request, user_id: str | None = Depends(optional_user_id)):
    if not user_id:
        return JSONResponse(status_code=401, content={"error": "Not signed in"})
    try:
        body = await request.json()
    except ValueError:
        body = None
    name = body.get("name") if isinstance(body, dict) else None
    if not isinstance(name, str) or not name.strip():
        return JSONResponse(status_code=400, content={"error": "Circle name is required"})
    try:
        circle = await repositories.create_circle(get_db(request), user_id, name)
    except (ValueError, DBAPIError) as exc:
        logger.exception("Failed to create circle: %s", exc)
        return JSONResponse(status_code=400, content={"error": "Could not create circle"})
    return JSONResponse(status_code=201, content={"id": circle["id"]})


@router.get("/v1/circles")
async def list_circles(ctx: RequestContext = Depends(get_context)):
    return {"items": await repositories.list_memberships(ctx.db, ctx.user_id)}


@router.get("/v1/circles/{circle_id}")
async def get_circle(circle_id: str, ctx: RequestContext = Depends(get_context)):
    membership = await repositories.require_membership(ctx.db, circle_id, ctx.user_id)
    circle = await repositories.get_circle(ctx.db, circle_id)
    return {**circle, "role": membership["role"]}


@router.get("/v1/circles/{circle_id}/members")
async def list_members(circle_id: str, ctx: RequestContext = Depends(get_context)):
    return {"items": await circle_views.load_members(ctx.db, circle_id, ctx.user_id)}
