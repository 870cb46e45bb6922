from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from winning.context import RequestContext, get_context
from winning.periods import build_month_grid, month_date_range, next_month, prev_month
from winning.schemas import EventCreate, EventPatch, MonthGoalsPayload, MonthReviewPayload, TaskType
from winning import repositories

router = APIRouter()

EVENT_TYPES = [TaskType.EVENT.value]


@router.get("/v1/month/{month_year}")
async def get_month(month_year: str, ctx: RequestContext = Depends(get_context)):
    start_iso, end_iso = month_date_range(month_year)
    previous = prev_month(month_year)
    events = await repositories.list_tasks(ctx.db, [ctx.user_id], EVENT_TYPES, start_iso, end_iso)
    notes = await repositories.get_month_notes(ctx.db, ctx.user_id, month_year)
    previous_notes = await repositories.get_month_notes(ctx.db, ctx.user_id, previous)
    return {
        "month": month_year,
        "start_date": start_iso,
        "end_date": end_iso,
        "prev_month": previous,
        "next_month": next_month(month_year),
        "cells": [
            cell.to_dict()
            for cell in build_month_grid(month_year, today=ctx.today, first_weekday=ctx.first_weekday)
        ],
        "events": jsonable_encoder(events),
        "goals": notes["goals"],
        "prev_month_review": previous_notes["review"],
    }


@router.put("/v1/month/{month_year}/goals")
async def save_month_goals(month_year: str, payload: MonthGoalsPayload, ctx: RequestContext = Depends(get_context)):
    return await repositories.set_month_note(ctx.db, ctx.user_id, month_year, "goals", payload.goals)


@router.put("/v1/month/{month_year}/review")
async def save_month_review(month_year: str, payload: MonthReviewPayload, ctx: RequestContext = Depends(get_context)):
    return await repositories.set_month_note(ctx.db, ctx.user_id, month_year, "review", payload.review)


@router.post("/v1/events")
async def create_event(payload: EventCreate, ctx: RequestContext = Depends(get_context)):
    record = await repositories.create_task(ctx.db, ctx.user_id, TaskType.EVENT, payload.model_dump())
    return jsonable_encoder(record)


@router.patch("/v1/events/{event_id}")
async def patch_event(event_id: str, payload: EventPatch, ctx: RequestContext = Depends(get_context)):
    record = await repositories.update_task(
        ctx.db,
        ctx.user_id,
        event_id,
        payload.model_dump(exclude_unset=True),
        EVENT_TYPES,
    )
    return jsonable_encoder(record)


@router.delete("/v1/events/{event_id}")
async def delete_event(event_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_task(ctx.db, ctx.user_id, event_id, EVENT_TYPES)
    return {"ok": True}
