from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from winning.context import RequestContext, get_context
from winning.schemas import CompletionPayload, GoalCreate, GoalPatch, MilestoneCreate, MilestonePatch
from winning import repositories

router = APIRouter()


@router.get("/v1/goals")
async def list_goals(ctx: RequestContext = Depends(get_context)):
    return {"items": await repositories.list_goals(ctx.db, [ctx.user_id])}


@router.post("/v1/goals")
async def create_goal(payload: GoalCreate, ctx: RequestContext = Depends(get_context)):
    return await repositories.create_goal(ctx.db, ctx.user_id, jsonable_encoder(payload))


@router.patch("/v1/goals/{goal_id}")
async def patch_goal(goal_id: str, payload: GoalPatch, ctx: RequestContext = Depends(get_context)):
    patch = jsonable_encoder(payload.model_dump(exclude_unset=True))
    return await repositories.update_goal(ctx.db, ctx.user_id, goal_id, patch)


@router.delete("/v1/goals/{goal_id}")
async def delete_goal(goal_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_goal(ctx.db, ctx.user_id, goal_id)
    return {"ok": True}


@router.post("/v1/goals/{goal_id}/complete")
async def complete_goal(goal_id: str, payload: CompletionPayload, ctx: RequestContext = Depends(get_context)):
    return await repositories.set_goal_completed(ctx.db, ctx.user_id, goal_id, payload.completed)


@router.post("/v1/goals/{goal_id}/milestones")
async def create_milestone(goal_id: str, payload: MilestoneCreate, ctx: RequestContext = Depends(get_context)):
    return await repositories.create_milestone(ctx.db, ctx.user_id, goal_id, jsonable_encoder(payload))


@router.patch("/v1/milestones/{milestone_id}")
async def patch_milestone(milestone_id: str, payload: MilestonePatch, ctx: RequestContext = Depends(get_context)):
    patch = jsonable_encoder(payload.model_dump(exclude_unset=True))
    return await repositories.update_milestone(ctx.db, ctx.user_id, milestone_id, patch)


@router.delete("/v1/milestones/{milestone_id}")
async def delete_milestone(milestone_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_milestone(ctx.db, ctx.user_id, milestone_id)
    return {"ok": True}


@router.post("/v1/milestones/{milestone_id}/complete")
async def complete_milestone(
    milestone_id: str,
    payload: CompletionPayload,
    ctx: RequestContext = Depends(get_context),
):
    return await repositories.set_milestone_completed(ctx.db, ctx.user_id, milestone_id, payload.completed)
