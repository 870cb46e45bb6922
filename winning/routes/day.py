from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from winning.context import RequestContext, get_context
from winning.periods import parse_iso_date, shift_day
from winning.schemas import DayNotesPatch, TaskType, TitlePayload
from winning import repositories

router = APIRouter()


def _day_key(day: str) -> str:
    return parse_iso_date(day).isoformat()


@router.get("/v1/day/{day}")
async def get_day(day: str, ctx: RequestContext = Depends(get_context)):
    day_iso = _day_key(day)
    priority = await repositories.get_priority(ctx.db, ctx.user_id, day_iso)
    notes = await repositories.get_day_notes(ctx.db, ctx.user_id, day_iso)
    todos = await repositories.list_tasks(ctx.db, [ctx.user_id], [TaskType.TASK.value], day_iso)
    return {
        "date": day_iso,
        "is_today": day_iso == ctx.today.isoformat(),
        "prev": shift_day(day_iso, -1),
        "next": shift_day(day_iso, 1),
        "priority": jsonable_encoder(priority),
        "schedule": notes["schedule"],
        "notes": notes["notes"],
        "todos": jsonable_encoder(todos),
    }


@router.put("/v1/day/{day}/priority")
async def save_priority(day: str, payload: TitlePayload, ctx: RequestContext = Depends(get_context)):
    priority = await repositories.save_priority(ctx.db, ctx.user_id, _day_key(day), payload.title)
    return {"priority": jsonable_encoder(priority)}


@router.put("/v1/day/{day}/notes")
async def patch_notes(day: str, payload: DayNotesPatch, ctx: RequestContext = Depends(get_context)):
    return await repositories.patch_day_notes(ctx.db, ctx.user_id, _day_key(day), payload.model_dump(exclude_unset=True))


@router.post("/v1/day/{day}/todos")
async def add_todo(day: str, payload: TitlePayload, ctx: RequestContext = Depends(get_context)):
    record = await repositories.create_task(
        ctx.db,
        ctx.user_id,
        TaskType.TASK,
        {"title": payload.title, "date": _day_key(day)},
    )
    return jsonable_encoder(record)


@router.post("/v1/tasks/{task_id}/toggle")
async def toggle_todo(task_id: str, ctx: RequestContext = Depends(get_context)):
    return jsonable_encoder(await repositories.toggle_todo(ctx.db, ctx.user_id, task_id))


@router.delete("/v1/tasks/{task_id}")
async def delete_task(task_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_task(ctx.db, ctx.user_id, task_id, [TaskType.TASK.value, TaskType.WEEK.value])
    return {"ok": True}
