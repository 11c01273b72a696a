from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from remindrelay.apps.api.deps import get_db
from remindrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from remindrelay.apps.api.response import SuccessEnvelope, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse])
async def readiness(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can read the reason.
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_unavailable error=%s", exc)
        database = "unavailable"
    status = "ok" if database == "ok" else "degraded"
    return success_response(request=request, data=ReadinessResponse(status=status, database=database))
