from __future__ import annotations

from fastapi import APIRouter, Depends

from winning.context import RequestContext, get_context
from winning.metrics import win_totals
from winning.schemas import WinCreate
from winning import repositories

router = APIRouter()


@router.get("/v1/wins")
async def list_wins(ctx: RequestContext = Depends(get_context)):
    wins = await repositories.list_wins(ctx.db, [ctx.user_id])
    return {"items": wins, "totals": win_totals(wins)}


@router.post("/v1/wins")
async def create_win(payload: WinCreate, ctx: RequestContext = Depends(get_context)):
    return await repositories.create_manual_win(ctx.db, ctx.user_id, payload.model_dump())


@router.delete("/v1/wins/{win_id}")
async def delete_win(win_id: str, ctx: RequestContext = Depends(get_context)):
    await repositories.delete_win(ctx.db, ctx.user_id, win_id)
    return {"ok": True}
