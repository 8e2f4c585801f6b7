"""
买家售后 API
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_buyer_id, get_notifier, get_refund_client, raise_for_error, unwrap
from marketplace.database import get_db
from marketplace.models.return_request import EscalationReason
from marketplace.schemas.return_request import (
    EligibilitySchema,
    EscalateRequest,
    MarkReadResponse,
    MessageCreate,
    MessageSchema,
    ReturnRequestCreate,
    ReturnRequestListResponse,
    ReturnRequestSchema,
    UnreadCountResponse,
)
from marketplace.services.admin_actions import AdminActionService
from marketplace.services.messaging import MessageService
from marketplace.services.result import ReturnRequestError
from marketplace.services.return_request_service import ReturnRequestService

router = APIRouter()


async def get_own_case(return_request_id: int, buyer_id: int, db: AsyncSession):
    rr = await ReturnRequestService(db).get_return_request(return_request_id)
    if not rr:
        raise HTTPException(status_code=404, detail="售后单不存在")
    if rr.buyer_id != buyer_id:
        raise HTTPException(status_code=403, detail="无权查看该售后单")
    return rr


@router.get("/eligibility", response_model=EligibilitySchema)
async def check_eligibility(
    sub_order_id: int = Query(..., description="子订单ID"),
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    """是否可以对子订单发起售后"""
    result = await ReturnRequestService(db).validate_return_eligibility(sub_order_id, buyer_id)
    return EligibilitySchema(
        eligible=result.eligible,
        reason=result.reason,
        delivered_at=result.delivered_at,
        delivery_date_estimated=result.delivery_date_estimated,
    )


@router.post("", response_model=ReturnRequestSchema, status_code=201)
async def create_return_request(
    payload: ReturnRequestCreate,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier),
):
    """发起售后"""
    item_quantities = None
    if payload.items:
        item_quantities = {item.sub_order_item_id: item.quantity for item in payload.items}

    service = ReturnRequestService(db, notifier=notifier)
    try:
        return await service.create_return_request(
            sub_order_id=payload.sub_order_id,
            buyer_id=buyer_id,
            request_type=payload.request_type.value,
            reason=payload.reason.value,
            description=payload.description,
            is_full_return=payload.is_full_return,
            item_quantities=item_quantities,
        )
    except ReturnRequestError as e:
        raise_for_error(e.kind, str(e))


@router.get("", response_model=ReturnRequestListResponse)
async def list_my_return_requests(
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    """我的售后单"""
    items = await ReturnRequestService(db).get_return_requests_by_buyer(buyer_id)
    return ReturnRequestListResponse(total=len(items), items=items)


@router.get("/{return_request_id}", response_model=ReturnRequestSchema)
async def get_return_request(
    return_request_id: int,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_own_case(return_request_id, buyer_id, db)


@router.post("/{return_request_id}/escalate", response_model=ReturnRequestSchema)
async def escalate_return_request(
    return_request_id: int,
    payload: EscalateRequest,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    refund_client=Depends(get_refund_client),
):
    """买家申请平台介入"""
    await get_own_case(return_request_id, buyer_id, db)
    result = await AdminActionService(db, refund_client=refund_client).escalate_return_case(
        return_request_id, EscalationReason.BUYER_REQUESTED.value, buyer_id, payload.notes
    )
    return unwrap(result)


# =====================================================
# 沟通消息
# =====================================================

@router.get("/{return_request_id}/messages", response_model=List[MessageSchema])
async def get_messages(
    return_request_id: int,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await MessageService(db).get_messages(return_request_id, buyer_id, is_seller_viewing=False))


@router.post("/{return_request_id}/messages", response_model=MessageSchema, status_code=201)
async def add_message(
    return_request_id: int,
    payload: MessageCreate,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    result = await MessageService(db).add_message(return_request_id, buyer_id, payload.content, is_from_seller=False)
    return unwrap(result)


@router.post("/{return_request_id}/messages/read", response_model=MarkReadResponse)
async def mark_messages_read(
    return_request_id: int,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    result = await MessageService(db).mark_messages_as_read(return_request_id, buyer_id, is_seller_viewing=False)
    return MarkReadResponse(updated=unwrap(result))


@router.get("/{return_request_id}/messages/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    return_request_id: int,
    buyer_id: int = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
):
    unread = await MessageService(db).get_unread_count(return_request_id, buyer_id, is_seller_viewing=False)
    return UnreadCountResponse(unread=unread)
