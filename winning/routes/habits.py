from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from winning.context import RequestContext, get_context
from winning.metrics import habit_summary
from winning.periods import month_key, parse_iso_date
from winning.schemas import CompletionPayload, HabitCreate, HabitRename
from winning import repositories

router = APIRouter()


@router.get("/v1/habits")
async def list_habits(month: str | None = Query(None), ctx: RequestContext = Depends(get_context)):
    month_year = month or month_key(ctx.today)
    habits = await repositories.list_habits(ctx.db, [ctx.user_id], month_year)
    return {"month": month_year, "items": [habit_summary(habit, ctx.today) for habit in habits]}


@router.post("/v1/habits")
async def create_habit(payload: HabitCreate, ctx: RequestContext = Depends(get_context)):
    habit = await repositories.create_habit(
        ctx.db,
        ctx.user_id,
        payload.name,
        payload.month_year,
        limit=ctx.settings.habits_per_month_limit,
    )
    return habit_summary(habit, ctx.today)


@router.patch("/v1/habits/{habit_id}")
async def rename_habit(habit_id: str, payload: HabitRename, ctx: RequestContext = Depends(get_context)):
    return await repositories.rename_habit(ctx.db, ctx.user_id, habit_id, payload.name)


@router.delete("/v1/habits/{habit_id}")
async def delete_habit(habit_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_habit(ctx.db, ctx.user_id, habit_id)
    return {"ok": True}


@router.put("/v1/habits/{habit_id}/checks/{day}")
async def set_habit_check(
    habit_id: str,
    day: str,
    payload: CompletionPayload,
    ctx: RequestContext = Depends(get_context),
):
    day_iso = parse_iso_date(day).isoformat()
    completed = await repositories.set_habit_check(ctx.db, ctx.user_id, habit_id, day_iso, payload.completed)
    return {"habit_id": habit_id, "date": day_iso, "completed": completed}
