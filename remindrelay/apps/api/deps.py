from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from remindrelay.services.jobs import JobEngine, build_job_engine


def get_job_engine(request: Request) -> JobEngine:
    # One engine per app; built lazily when the lifespan hook did not run (e.g. ASGI test transports).
    engine = getattr(request.app.state, "job_engine", None)
    if engine is None:
        engine = build_job_engine()
        request.app.state.job_engine = engine
    return engine


async def get_db(engine: JobEngine = Depends(get_job_engine)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request, bound to the engine's database.
    async with engine.sessionmaker() as session:
        yield session
