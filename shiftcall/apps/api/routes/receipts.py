from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.apps.api.deps import get_db, get_orchestrator
from shiftcall.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from shiftcall.apps.api.response import SuccessEnvelope, success_response
from shiftcall.domain.states import ReceiptStatus
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator


router = APIRouter(prefix="/receipts", tags=["receipts"], responses=DEFAULT_ERROR_RESPONSES)


class PushReceiptRequest(BaseModel):
    notification_id: str
    status: ReceiptStatus


class SmsReceiptRequest(BaseModel):
    sms_sid: str
    status: ReceiptStatus


class ReceiptResponse(BaseModel):
    delivery_id: str
    status: str


def _not_found(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "DELIVERY_NOT_FOUND", "message": message},
    )


@router.post("/push", response_model=SuccessEnvelope[ReceiptResponse])
async def push_receipt(
    request: Request,
    payload: PushReceiptRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> dict:
    delivery = await orchestrator.confirm_delivery(
        session=db, notification_id=payload.notification_id, status=payload.status
    )
    if delivery is None:
        raise _not_found("no delivery for notification id")
    return success_response(request=request, data=ReceiptResponse(delivery_id=delivery.id, status=delivery.status))


@router.post("/sms", response_model=SuccessEnvelope[ReceiptResponse])
async def sms_receipt(
    request: Request,
    payload: SmsReceiptRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> dict:
    delivery = await orchestrator.confirm_sms_delivery(session=db, sms_sid=payload.sms_sid, status=payload.status)
    if delivery is None:
        raise _not_found("no delivery for message sid")
    return success_response(request=request, data=ReceiptResponse(delivery_id=delivery.id, status=delivery.status))
