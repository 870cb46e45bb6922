from __future__ import annotations

from fastapi import APIRouter, Depends

from winning.context import RequestContext, get_context
from winning.schemas import RoutineStepsPayload, RoutineType, StepCompletionPayload, StepMovePayload
from winning import repositories

router = APIRouter()


@router.get("/v1/routines")
async def get_routines(ctx: RequestContext = Depends(get_context)):
    routines = await repositories.ensure_routines(ctx.db, ctx.user_id)
    return {routine_type: routines.get(routine_type) for routine_type in repositories.ROUTINE_TYPES}


@router.put("/v1/routines/{routine_type}")
async def save_steps(routine_type: RoutineType, payload: RoutineStepsPayload, ctx: RequestContext = Depends(get_context)):
    steps = [step.model_dump(by_alias=True) for step in payload.steps]
    return await repositories.save_routine_steps(ctx.db, ctx.user_id, routine_type, steps)


@router.post("/v1/routines/{routine_type}/steps/{step_id}/move")
async def move_step(
    routine_type: RoutineType,
    step_id: str,
    payload: StepMovePayload,
    ctx: RequestContext = Depends(get_context),
):
    return await repositories.move_routine_step(ctx.db, ctx.user_id, routine_type, step_id, payload.direction)


@router.put("/v1/routines/{routine_type}/steps/{step_id}/completion")
async def set_step_completion(
    routine_type: RoutineType,
    step_id: str,
    payload: StepCompletionPayload,
    ctx: RequestContext = Depends(get_context),
):
    day = payload.date or ctx.today
    return await repositories.set_routine_step_completion(
        ctx.db,
        ctx.user_id,
        routine_type,
        step_id,
        day.isoformat(),
        payload.completed,
    )
