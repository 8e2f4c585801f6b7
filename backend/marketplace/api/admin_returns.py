"""
平台后台售后 API
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_admin_id, get_refund_client, unwrap
from marketplace.database import get_db
from marketplace.models.return_request import ReturnRequestType, ReturnStatus
from marketplace.schemas.return_request import (
    AdminActionSchema,
    AdminDecisionRequest,
    EscalateRequest,
    RefundConfirmation,
    RefundTransactionSchema,
    ResolutionOutcomeSchema,
    RetryRefundRequest,
    ReturnRequestListResponse,
    ReturnRequestSchema,
    outcome_to_schema,
)
from marketplace.services.admin_actions import AdminActionService
from marketplace.services.return_request_service import ReturnRequestService

router = APIRouter()


@router.get("", response_model=ReturnRequestListResponse)
async def list_return_requests(
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    status: Optional[ReturnStatus] = Query(None, description="状态"),
    request_type: Optional[ReturnRequestType] = Query(None, description="申请类型"),
    store_id: Optional[int] = Query(None, description="店铺ID"),
    escalated_only: bool = Query(False, description="只看已升级"),
    breached_only: bool = Query(False, description="只看已超时"),
    search: Optional[str] = Query(None, description="售后单号"),
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """售后单列表"""
    total, items = await ReturnRequestService(db).search_return_requests(
        status=status,
        request_type=request_type,
        store_id=store_id,
        escalated_only=escalated_only,
        breached_only=breached_only,
        search=search,
        page=page,
        page_size=page_size,
    )
    return ReturnRequestListResponse(total=total, items=items)


@router.get("/{return_request_id}", response_model=ReturnRequestSchema)
async def get_return_request(
    return_request_id: int,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    rr = await ReturnRequestService(db).get_return_request(return_request_id)
    if not rr:
        raise HTTPException(status_code=404, detail="售后单不存在")
    return rr


@router.post("/{return_request_id}/escalate", response_model=ReturnRequestSchema)
async def escalate_return_request(
    return_request_id: int,
    payload: EscalateRequest,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """平台主动介入"""
    result = await AdminActionService(db).escalate_return_case(
        return_request_id, payload.reason.value, admin_id, payload.notes
    )
    return unwrap(result)


@router.post("/{return_request_id}/decisions", response_model=ResolutionOutcomeSchema)
async def record_admin_decision(
    return_request_id: int,
    payload: AdminDecisionRequest,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
    refund_client=Depends(get_refund_client),
):
    """平台裁决"""
    result = await AdminActionService(db, refund_client=refund_client).record_admin_decision(
        return_request_id,
        admin_id,
        payload.action_type.value,
        payload.notes,
        new_status=payload.new_status.value if payload.new_status else None,
        resolution_type=payload.resolution_type.value if payload.resolution_type else None,
        resolution_amount=payload.resolution_amount,
    )
    return outcome_to_schema(unwrap(result))


@router.get("/{return_request_id}/actions", response_model=List[AdminActionSchema])
async def get_admin_actions(
    return_request_id: int,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """平台介入记录"""
    return await AdminActionService(db).get_admin_actions(return_request_id)


@router.get("/{return_request_id}/refunds", response_model=List[RefundTransactionSchema])
async def get_refunds(
    return_request_id: int,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """退款记录"""
    return await ReturnRequestService(db).get_linked_refunds(return_request_id)


@router.post("/{return_request_id}/refunds/retry", response_model=ResolutionOutcomeSchema)
async def retry_failed_refund(
    return_request_id: int,
    payload: RetryRefundRequest,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
    refund_client=Depends(get_refund_client),
):
    """重新发起失败的退款"""
    result = await AdminActionService(db, refund_client=refund_client).retry_failed_refund(
        return_request_id, admin_id, payload.notes
    )
    return outcome_to_schema(unwrap(result))


@router.post("/refunds/{refund_id}/confirm", response_model=RefundTransactionSchema)
async def confirm_refund(
    refund_id: int,
    payload: RefundConfirmation,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """退款服务回执"""
    result = await ReturnRequestService(db).confirm_refund(
        refund_id, payload.status, payload.provider_refund_id, payload.error_message
    )
    return unwrap(result)
