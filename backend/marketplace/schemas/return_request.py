"""
售后单相关 Schema
"""
from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from typing import Optional, List

from marketplace.models.return_request import (
    ReturnRequestType,
    ReturnReason,
    ReturnStatus,
    ResolutionType,
    EscalationReason,
    AdminActionType,
)


class ReturnRequestItemSchema(BaseModel):
    """部分退货明细"""
    id: int
    sub_order_item_id: int
    quantity: int
    refund_amount: float

    class Config:
        from_attributes = True


class ReturnRequestSchema(BaseModel):
    """售后单信息"""
    id: int
    return_number: str
    sub_order_id: int
    buyer_id: int

    request_type: ReturnRequestType
    reason: ReturnReason
    description: Optional[str] = None
    status: ReturnStatus
    seller_notes: Optional[str] = None

    is_full_return: bool
    refund_amount: float

    # 处理结果
    resolution_type: ResolutionType = ResolutionType.NONE
    resolution_notes: Optional[str] = None
    resolution_amount: Optional[float] = None
    resolved_at: Optional[datetime] = None

    # SLA
    first_response_deadline: Optional[datetime] = None
    resolution_deadline: Optional[datetime] = None
    seller_first_response_at: Optional[datetime] = None
    first_response_sla_breached: bool = False
    resolution_sla_breached: bool = False

    # 升级
    escalation_reason: EscalationReason = EscalationReason.NONE
    escalated_at: Optional[datetime] = None
    escalated_by_user_id: Optional[int] = None

    # 时间
    requested_at: datetime
    updated_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    items: List[ReturnRequestItemSchema] = []

    class Config:
        from_attributes = True


class ReturnRequestListResponse(BaseModel):
    """售后单列表响应"""
    total: int
    items: List[ReturnRequestSchema]


class EligibilitySchema(BaseModel):
    """是否可发起售后"""
    eligible: bool
    reason: Optional[str] = None
    delivered_at: Optional[datetime] = None
    delivery_date_estimated: bool = False


class ReturnItemQuantity(BaseModel):
    sub_order_item_id: int
    quantity: int


class ReturnRequestCreate(BaseModel):
    """买家发起售后"""
    sub_order_id: int
    request_type: ReturnRequestType = ReturnRequestType.RETURN
    reason: ReturnReason
    description: Optional[str] = Field(None, max_length=1000)
    is_full_return: bool = True
    items: Optional[List[ReturnItemQuantity]] = None

    @model_validator(mode="after")
    def check_items(self):
        if self.items:
            item_ids = [item.sub_order_item_id for item in self.items]
            if len(item_ids) != len(set(item_ids)):
                raise ValueError("同一商品行不能重复提交，请合并数量")
        return self


class SellerDecision(BaseModel):
    """卖家同意/拒绝"""
    notes: Optional[str] = Field(None, max_length=1000)


class ResolveCaseRequest(BaseModel):
    """卖家处理"""
    resolution_type: ResolutionType
    notes: str = Field(..., max_length=2000)
    amount: Optional[float] = None

    @model_validator(mode="after")
    def check_resolution(self):
        if self.resolution_type == ResolutionType.NONE:
            raise ValueError("处理结果不能为空")
        return self


class EscalateRequest(BaseModel):
    """升级到平台"""
    reason: EscalationReason = EscalationReason.BUYER_REQUESTED
    notes: Optional[str] = Field(None, max_length=2000)


class AdminDecisionRequest(BaseModel):
    """平台裁决"""
    action_type: AdminActionType
    notes: str
    new_status: Optional[ReturnStatus] = None
    resolution_type: Optional[ResolutionType] = None
    resolution_amount: Optional[float] = None


class AdminActionSchema(BaseModel):
    """平台介入记录"""
    id: int
    return_request_id: int
    admin_user_id: int
    action_type: AdminActionType
    previous_status: Optional[ReturnStatus] = None
    new_status: Optional[ReturnStatus] = None
    notes: str
    resolution_type: Optional[ResolutionType] = None
    resolution_amount: Optional[float] = None
    action_taken_at: datetime

    class Config:
        from_attributes = True


class RefundTransactionSchema(BaseModel):
    """退款记录"""
    id: int
    refund_number: str
    return_request_id: Optional[int] = None
    amount: float
    status: str
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None
    requested_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ResolutionOutcomeSchema(BaseModel):
    """处理结果（退款失败时 refund_error 非空，需人工跟进）"""
    return_request: ReturnRequestSchema
    refund: Optional[RefundTransactionSchema] = None
    refund_error: Optional[str] = None


class RefundConfirmation(BaseModel):
    """退款服务回调"""
    status: str
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None


class RetryRefundRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)


class MessageCreate(BaseModel):
    """发送消息"""
    content: str


class MessageSchema(BaseModel):
    """沟通消息"""
    id: int
    return_request_id: int
    sender_id: int
    content: str
    is_from_seller: bool
    sent_at: datetime
    is_read: bool
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UnreadCountResponse(BaseModel):
    unread: int


class MarkReadResponse(BaseModel):
    updated: int


def outcome_to_schema(outcome) -> ResolutionOutcomeSchema:
    """ResolutionOutcome -> 响应模型"""
    return ResolutionOutcomeSchema(
        return_request=ReturnRequestSchema.model_validate(outcome.return_request),
        refund=RefundTransactionSchema.model_validate(outcome.refund) if outcome.refund else None,
        refund_error=outcome.refund_error,
    )
