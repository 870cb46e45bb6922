from __future__ import annotations

from fastapi import APIRouter, Depends

from winning.context import RequestContext, get_context
from winning.schemas import ProfilePayload
from winning import repositories

router = APIRouter()


@router.get("/v1/profile")
async def get_profile(ctx: RequestContext = Depends(get_context)):
    return await repositories.get_profile(ctx.db, ctx.user_id)


@router.put("/v1/profile")
async def set_profile(payload: ProfilePayload, ctx: RequestContext = Depends(get_context)):
    return await repositories.set_display_name(ctx.db, ctx.user_id, payload.display_name)
