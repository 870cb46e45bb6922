from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from fastapi import Depends, Header, Request

from winning.auth import app_settings, require_user_id
from winning.db import Database, get_db
from winning.periods import today_local
from winning.settings import Settings


@dataclass
class RequestContext:
    db: Database
    settings: Settings
    user_id: str
    timezone: str
    today: date

    @property
    def first_weekday(self) -> int:
        return self.settings.month_grid_first_weekday


async def get_context(
    request: Request,
    user_id: str = Depends(require_user_id),
    x_timezone: str | None = Header(default=None, alias="X-Timezone"),
) -> RequestContext:
    settings = app_settings(request)
    tz_name = (x_timezone or "").strip() or settings.default_timezone
    return RequestContext(
        db=get_db(request),
        settings=settings,
        user_id=user_id,
        timezone=tz_name,
        today=today_local(tz_name),
    )
