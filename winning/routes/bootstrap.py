from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from winning.context import RequestContext, get_context
from winning.periods import get_week_start_local, month_key
from winning import repositories

router = APIRouter()


@router.get("/v1/bootstrap")
async def bootstrap(ctx: RequestContext = Depends(get_context)):
    today_iso = ctx.today.isoformat()
    profile = await repositories.get_profile(ctx.db, ctx.user_id)
    priority = await repositories.get_priority(ctx.db, ctx.user_id, today_iso)
    return {
        "user_id": ctx.user_id,
        "display_name": profile.get("display_name"),
        "timezone": ctx.timezone,
        "today": today_iso,
        "week_start": get_week_start_local(ctx.today),
        "month": month_key(ctx.today),
        "today_priority": jsonable_encoder(priority),
        "quick_indicators": {
            "open_todos": await repositories.count_open_todos(ctx.db, ctx.user_id, today_iso),
        },
        "circles": await repositories.list_memberships(ctx.db, ctx.user_id),
    }
