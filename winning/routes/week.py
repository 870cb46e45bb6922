from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder

from winning.context import RequestContext, get_context
from winning.periods import get_week_start_local, parse_iso_date, shift_week, week_dates, week_end
from winning.schemas import ReviewPayload, StatusPayload, TaskType, WeekTaskCreate, WeekTaskPatch
from winning import repositories

router = APIRouter()

WEEK_TYPES = [TaskType.WEEK.value]


def _week_task_fields(payload: dict) -> dict:
    clean = dict(payload)
    if "notes" in clean:
        clean["description"] = clean.pop("notes")
    return clean


async def _week_payload(ctx: RequestContext, week_key: str) -> dict:
    last_week = shift_week(week_key, -1)
    tasks = await repositories.list_tasks(ctx.db, [ctx.user_id], WEEK_TYPES, week_key, week_end(week_key))
    return {
        "week_start": week_key,
        "week_end": week_end(week_key),
        "dates": week_dates(week_key),
        "prev": last_week,
        "next": shift_week(week_key, 1),
        "is_current": week_key == get_week_start_local(ctx.today),
        "last_week_review": await repositories.get_review(ctx.db, ctx.user_id, last_week),
        "review": await repositories.get_review(ctx.db, ctx.user_id, week_key),
        "tasks": jsonable_encoder(tasks),
    }


@router.get("/v1/week")
async def get_week(date_: date | None = Query(None, alias="date"), ctx: RequestContext = Depends(get_context)):
    return await _week_payload(ctx, get_week_start_local(date_ or ctx.today))


@router.get("/v1/week/{week_start}")
async def get_week_by_key(week_start: str, ctx: RequestContext = Depends(get_context)):
    return await _week_payload(ctx, get_week_start_local(parse_iso_date(week_start)))


@router.post("/v1/week/tasks")
async def create_week_task(payload: WeekTaskCreate, ctx: RequestContext = Depends(get_context)):
    record = await repositories.create_task(
        ctx.db,
        ctx.user_id,
        TaskType.WEEK,
        _week_task_fields(payload.model_dump()),
    )
    return jsonable_encoder(record)


@router.patch("/v1/week/tasks/{task_id}")
async def patch_week_task(task_id: str, payload: WeekTaskPatch, ctx: RequestContext = Depends(get_context)):
    patch = _week_task_fields(payload.model_dump(exclude_unset=True))
    record = await repositories.update_task(ctx.db, ctx.user_id, task_id, patch, WEEK_TYPES)
    return jsonable_encoder(record)


@router.put("/v1/week/tasks/{task_id}/status")
async def set_week_task_status(task_id: str, payload: StatusPayload, ctx: RequestContext = Depends(get_context)):
    record = await repositories.set_task_status(ctx.db, ctx.user_id, task_id, payload.status, WEEK_TYPES)
    return jsonable_encoder(record)


@router.delete("/v1/week/tasks/{task_id}")
async def delete_week_task(task_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_task(ctx.db, ctx.user_id, task_id, WEEK_TYPES)
    return {"ok": True}


@router.put("/v1/week/{week_start}/review")
async def save_review(week_start: str, payload: ReviewPayload, ctx: RequestContext = Depends(get_context)):
    week_key = get_week_start_local(parse_iso_date(week_start))
    review = await repositories.save_review(ctx.db, ctx.user_id, week_key, payload.model_dump())
    return {"week_start": week_key, **review}
