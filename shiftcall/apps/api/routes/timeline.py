from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.apps.api.deps import get_db
from shiftcall.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from shiftcall.apps.api.response import SuccessEnvelope, success_response
from shiftcall.services.event_log import list_timeline, serialize_event


router = APIRouter(prefix="/timeline", tags=["timeline"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def contact_timeline(
    request: Request,
    contact_id: str = Query(..., min_length=1),
    job_id: str = Query(..., min_length=1),
    organization_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await list_timeline(db, contact_id=contact_id, job_id=job_id, organization_id=organization_id)
    return success_response(request=request, data=[serialize_event(event) for event in events])
