from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from winning.db import Database
from winning.db_init import init_db
from winning.repositories import NotFoundError
from winning.routes import (
    bootstrap,
    circles,
    invites,
    profile,
    goals,
    habits,
    routines,
    day,
    week,
    month,
    wins,
    circle_views,
    periods,
)
from winning.settings import Settings, get_settings


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    logger = logging.getLogger("winning")
    app = FastAPI(title="Winning API", version="0.1.0")
    app.state.settings = settings
    app.state.db = Database(settings.database_url)

    app.include_router(bootstrap.router)
    app.include_router(circles.router)
    app.include_router(invites.router)
    app.include_router(profile.router)
    app.include_router(goals.router)
    app.include_router(habits.router)
    app.include_router(routines.router)
    app.include_router(day.router)
    app.include_router(week.router)
    app.include_router(month.router)
    app.include_router(wins.router)
    app.include_router(circle_views.router)
    app.include_router(periods.router)

    @app.on_event("startup")
    async def _startup():
        await init_db(app.state.db)

    @app.on_event("shutdown")
    async def _shutdown():
        await app.state.db.dispose()

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PermissionError)
    async def _forbidden_handler(request: Request, exc: PermissionError):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_request_handler(request: Request, exc: ValueError):
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
