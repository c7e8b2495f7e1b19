from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from planguard.apps.api.deps import get_db
from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)):
    # Report degraded instead of failing so load balancers can tell the difference.
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        data = HealthResponse(status="degraded", database="unavailable")
    else:
        data = HealthResponse(status="ok", database="ok")
    return success_response(request=request, data=data)
