from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query

from winning.context import RequestContext, get_context
from winning.periods import (
    build_month_grid,
    get_week_start_local,
    month_date_range,
    next_month,
    prev_month,
    shift_week,
    week_dates,
    week_end,
)
from winning.schemas import MonthGridResponse, WeekPeriodResponse

router = APIRouter()


@router.get("/v1/periods/month/{month_year}", response_model=MonthGridResponse)
async def month_period(month_year: str, ctx: RequestContext = Depends(get_context)):
    start_iso, end_iso = month_date_range(month_year)
    cells = build_month_grid(month_year, today=ctx.today, first_weekday=ctx.first_weekday)
    return MonthGridResponse(
        month=month_year,
        start_date=start_iso,
        end_date=end_iso,
        prev_month=prev_month(month_year),
        next_month=next_month(month_year),
        cells=[cell.to_dict() for cell in cells],
    )


@router.get("/v1/periods/week", response_model=WeekPeriodResponse)
async def week_period(date_: date | None = Query(None, alias="date"), ctx: RequestContext = Depends(get_context)):
    week_key = get_week_start_local(date_ or ctx.today)
    return WeekPeriodResponse(
        week_start=week_key,
        week_end=week_end(week_key),
        prev_week=shift_week(week_key, -1),
        next_week=shift_week(week_key, 1),
        dates=week_dates(week_key),
    )
