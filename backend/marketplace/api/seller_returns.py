"""
卖家售后 API
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import SellerActor, get_refund_client, get_seller, unwrap
from marketplace.database import get_db
from marketplace.schemas.return_request import (
    EscalateRequest,
    MarkReadResponse,
    MessageCreate,
    MessageSchema,
    ResolutionOutcomeSchema,
    ResolveCaseRequest,
    ReturnRequestListResponse,
    ReturnRequestSchema,
    SellerDecision,
    UnreadCountResponse,
    outcome_to_schema,
)
from marketplace.services.admin_actions import AdminActionService
from marketplace.services.messaging import MessageService
from marketplace.services.return_request_service import ReturnRequestService, load_case

router = APIRouter()


async def ensure_store_case(return_request_id: int, seller: SellerActor, db: AsyncSession):
    ctx = await load_case(db, return_request_id)
    if not ctx:
        raise HTTPException(status_code=404, detail="售后单不存在")
    if ctx.sub_order.store_id != seller.store_id:
        raise HTTPException(status_code=403, detail="无权查看该售后单")
    return ctx.return_request


@router.get("", response_model=ReturnRequestListResponse)
async def list_store_return_requests(
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    """本店铺的售后单"""
    items = await ReturnRequestService(db).get_return_requests_by_store(seller.store_id)
    return ReturnRequestListResponse(total=len(items), items=items)


@router.get("/{return_request_id}", response_model=ReturnRequestSchema)
async def get_return_request(
    return_request_id: int,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    return await ensure_store_case(return_request_id, seller, db)


@router.post("/{return_request_id}/approve", response_model=ReturnRequestSchema)
async def approve_return_request(
    return_request_id: int,
    payload: SellerDecision,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    """同意售后"""
    result = await ReturnRequestService(db).approve_return_request(return_request_id, seller.store_id, payload.notes)
    return unwrap(result)


@router.post("/{return_request_id}/reject", response_model=ReturnRequestSchema)
async def reject_return_request(
    return_request_id: int,
    payload: SellerDecision,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    """拒绝售后（必须填写原因）"""
    result = await ReturnRequestService(db).reject_return_request(return_request_id, seller.store_id, payload.notes)
    return unwrap(result)


@router.post("/{return_request_id}/resolve", response_model=ResolutionOutcomeSchema)
async def resolve_return_request(
    return_request_id: int,
    payload: ResolveCaseRequest,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
    refund_client=Depends(get_refund_client),
):
    """
    处理售后单

    退款失败时处理结果依然生效，响应中的 refund_error 非空
    """
    service = ReturnRequestService(db, refund_client=refund_client)
    result = await service.resolve_return_case(
        return_request_id,
        seller.store_id,
        payload.resolution_type.value,
        payload.notes,
        payload.amount,
        initiated_by_user_id=seller.user_id,
    )
    return outcome_to_schema(unwrap(result))


@router.post("/{return_request_id}/escalate", response_model=ReturnRequestSchema)
async def escalate_return_request(
    return_request_id: int,
    payload: EscalateRequest,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    """卖家申请平台介入"""
    await ensure_store_case(return_request_id, seller, db)
    result = await AdminActionService(db).escalate_return_case(
        return_request_id, payload.reason.value, seller.user_id, payload.notes
    )
    return unwrap(result)


# =====================================================
# 沟通消息
# =====================================================

@router.get("/{return_request_id}/messages", response_model=List[MessageSchema])
async def get_messages(
    return_request_id: int,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    return unwrap(await MessageService(db).get_messages(return_request_id, seller.user_id, is_seller_viewing=True))


@router.post("/{return_request_id}/messages", response_model=MessageSchema, status_code=201)
async def add_message(
    return_request_id: int,
    payload: MessageCreate,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    result = await MessageService(db).add_message(
        return_request_id, seller.user_id, payload.content, is_from_seller=True
    )
    return unwrap(result)


@router.post("/{return_request_id}/messages/read", response_model=MarkReadResponse)
async def mark_messages_read(
    return_request_id: int,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    result = await MessageService(db).mark_messages_as_read(return_request_id, seller.user_id, is_seller_viewing=True)
    return MarkReadResponse(updated=unwrap(result))


@router.get("/{return_request_id}/messages/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    return_request_id: int,
    seller: SellerActor = Depends(get_seller),
    db: AsyncSession = Depends(get_db),
):
    unread = await MessageService(db).get_unread_count(return_request_id, seller.user_id, is_seller_viewing=True)
    return UnreadCountResponse(unread=unread)
