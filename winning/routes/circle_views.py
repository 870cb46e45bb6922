from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query

from winning.context import RequestContext, get_context
from winning.periods import get_week_start_local, month_key
from winning.services import circle_views

router = APIRouter()


@router.get("/v1/circles/{circle_id}/habits")
async def circle_habits(circle_id: str, month: str | None = Query(None), ctx: RequestContext = Depends(get_context)):
    return await circle_views.habits_view(ctx.db, circle_id, ctx.user_id, month or month_key(ctx.today), ctx.today)


@router.get("/v1/circles/{circle_id}/goals")
async def circle_goals(circle_id: str, ctx: RequestContext = Depends(get_context)):
    return await circle_views.goals_view(ctx.db, circle_id, ctx.user_id)


@router.get("/v1/circles/{circle_id}/routines")
async def circle_routines(circle_id: str, ctx: RequestContext = Depends(get_context)):
    return await circle_views.routines_view(ctx.db, circle_id, ctx.user_id, ctx.today)


@router.get("/v1/circles/{circle_id}/wins")
async def circle_wins(
    circle_id: str,
    owner: str = Query("all"),
    category: str | None = Query(None),
    ctx: RequestContext = Depends(get_context),
):
    return await circle_views.wins_view(ctx.db, circle_id, ctx.user_id, owner=owner, category=category)


@router.get("/v1/circles/{circle_id}/calendar")
async def circle_calendar(circle_id: str, month: str | None = Query(None), ctx: RequestContext = Depends(get_context)):
    return await circle_views.calendar_view(
        ctx.db,
        circle_id,
        ctx.user_id,
        month or month_key(ctx.today),
        ctx.today,
        ctx.first_weekday,
    )


@router.get("/v1/circles/{circle_id}/daily")
async def circle_daily(circle_id: str, date_: date | None = Query(None, alias="date"), ctx: RequestContext = Depends(get_context)):
    return await circle_views.daily_view(ctx.db, circle_id, ctx.user_id, (date_ or ctx.today).isoformat())


@router.get("/v1/circles/{circle_id}/weekly")
async def circle_weekly(
    circle_id: str,
    week_start: date | None = Query(None),
    ctx: RequestContext = Depends(get_context),
):
    week_key = get_week_start_local(week_start or ctx.today)
    return await circle_views.weekly_view(ctx.db, circle_id, ctx.user_id, week_key)
