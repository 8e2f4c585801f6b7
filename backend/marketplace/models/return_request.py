"""
退货/投诉单模型
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, Float, Text, Boolean, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base
from marketplace.utils.timeutil import utcnow


class ReturnRequestType(str, Enum):
    """申请类型"""
    RETURN = "Return"
    COMPLAINT = "Complaint"


class ReturnReason(str, Enum):
    """退货原因"""
    DAMAGED = "Damaged"
    WRONG_ITEM = "WrongItem"
    NOT_AS_DESCRIBED = "NotAsDescribed"
    DEFECTIVE = "Defective"
    ARRIVED_LATE = "ArrivedLate"
    CHANGED_MIND = "ChangedMind"
    OTHER = "Other"


class ReturnStatus(str, Enum):
    """
    售后单状态

    Requested -> Approved / Rejected
    Approved -> Resolved
    Requested / Approved / UnderAdminReview -> UnderAdminReview
    UnderAdminReview -> Resolved
    Resolved -> Completed（退款确认到账）
    """
    REQUESTED = "Requested"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    UNDER_ADMIN_REVIEW = "UnderAdminReview"
    RESOLVED = "Resolved"
    COMPLETED = "Completed"


class ResolutionType(str, Enum):
    """处理结果"""
    NONE = "None"
    FULL_REFUND = "FullRefund"
    PARTIAL_REFUND = "PartialRefund"
    NO_REFUND = "NoRefund"


class EscalationReason(str, Enum):
    """升级原因"""
    NONE = "None"
    BUYER_REQUESTED = "BuyerRequested"
    SLA_BREACH = "SLABreach"
    ADMIN_MANUAL_FLAG = "AdminManualFlag"


class AdminActionType(str, Enum):
    """平台介入动作"""
    ESCALATED = "Escalated"
    ESCALATED_SLA_BREACH = "EscalatedSLABreach"
    MANUAL_FLAG = "ManualFlag"
    OVERRIDE_SELLER_DECISION = "OverrideSellerDecision"
    ENFORCE_REFUND = "EnforceRefund"
    CLOSE_WITHOUT_ACTION = "CloseWithoutAction"
    APPROVED_SELLER_DECISION = "ApprovedSellerDecision"
    ADDED_NOTES = "AddedNotes"


# 同一子订单同时只允许存在一个“未被拒绝”的售后单
ACTIVE_CASE_WHERE = text("status != 'Rejected'")

# 仍在处理中的状态（SLA 巡检范围）
OPEN_STATUSES = (
    ReturnStatus.REQUESTED.value,
    ReturnStatus.APPROVED.value,
    ReturnStatus.UNDER_ADMIN_REVIEW.value,
)

REFUND_RESOLUTIONS = (
    ResolutionType.FULL_REFUND.value,
    ResolutionType.PARTIAL_REFUND.value,
)


class ReturnRequest(Base):
    """售后单表"""
    __tablename__ = "return_requests"
    __table_args__ = (
        Index(
            "uq_return_requests_active_sub_order",
            "sub_order_id",
            unique=True,
            sqlite_where=ACTIVE_CASE_WHERE,
            postgresql_where=ACTIVE_CASE_WHERE,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_number: Mapped[str] = mapped_column(String(50), unique=True, index=True, comment="售后单号")

    sub_order_id: Mapped[int] = mapped_column(Integer, ForeignKey("seller_sub_orders.id"), index=True, comment="子订单ID")
    buyer_id: Mapped[int] = mapped_column(Integer, index=True, comment="买家用户ID")

    # 类型、原因和状态
    request_type: Mapped[str] = mapped_column(String(32), default=ReturnRequestType.RETURN.value, comment="申请类型")
    reason: Mapped[str] = mapped_column(String(32), comment="退货原因")
    description: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True, comment="问题描述")
    status: Mapped[str] = mapped_column(String(32), default=ReturnStatus.REQUESTED.value, index=True, comment="状态")
    seller_notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True, comment="卖家备注")

    # 金额
    is_full_return: Mapped[bool] = mapped_column(Boolean, default=True, comment="是否整单退货")
    refund_amount: Mapped[float] = mapped_column(Float, default=0, comment="申请退款金额（创建时计算）")

    # 处理结果
    resolution_type: Mapped[str] = mapped_column(String(32), default=ResolutionType.NONE.value, comment="处理结果")
    resolution_notes: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True, comment="处理说明")
    resolution_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="实际退款金额")
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="处理时间")

    # SLA
    first_response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="首次响应截止")
    resolution_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="处理截止")
    seller_first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="卖家首次响应时间")
    first_response_sla_breached: Mapped[bool] = mapped_column(Boolean, default=False, index=True, comment="首次响应超时")
    resolution_sla_breached: Mapped[bool] = mapped_column(Boolean, default=False, index=True, comment="处理超时")

    # 升级
    escalation_reason: Mapped[str] = mapped_column(String(32), default=EscalationReason.NONE.value, comment="升级原因")
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="升级时间")
    escalated_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="升级操作人")

    # 时间
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True, comment="申请时间")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="更新时间")
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="同意时间")
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="拒绝时间")
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="完结时间")

    # 乐观锁：并发写同一单时后写者 flush 失败
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, comment="版本号")

    __mapper_args__ = {"version_id_col": version}

    sub_order: Mapped["SellerSubOrder"] = relationship("SellerSubOrder")
    items: Mapped[List["ReturnRequestItem"]] = relationship(
        "ReturnRequestItem", back_populates="return_request", cascade="all, delete-orphan", lazy="selectin"
    )


class ReturnRequestItem(Base):
    """部分退货的商品明细"""
    __tablename__ = "return_request_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("return_requests.id"), index=True, comment="售后单ID")
    sub_order_item_id: Mapped[int] = mapped_column(Integer, ForeignKey("sub_order_items.id"), comment="原订单商品行ID")
    quantity: Mapped[int] = mapped_column(Integer, comment="退货数量")
    refund_amount: Mapped[float] = mapped_column(Float, comment="退款金额 = 单价 × 数量")

    return_request: Mapped["ReturnRequest"] = relationship("ReturnRequest", back_populates="items")


class ReturnRequestMessage(Base):
    """买卖双方沟通消息（只追加，不删除）"""
    __tablename__ = "return_request_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("return_requests.id"), index=True, comment="售后单ID")
    sender_id: Mapped[int] = mapped_column(Integer, comment="发送人用户ID")
    content: Mapped[str] = mapped_column(Text, comment="消息内容")
    is_from_seller: Mapped[bool] = mapped_column(Boolean, default=False, comment="是否卖家发送")
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="发送时间")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, comment="是否已读")
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="已读时间")


class ReturnRequestAdminAction(Base):
    """平台介入记录（只追加，不修改）"""
    __tablename__ = "return_request_admin_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("return_requests.id"), index=True, comment="售后单ID")
    admin_user_id: Mapped[int] = mapped_column(Integer, comment="操作管理员")
    action_type: Mapped[str] = mapped_column(String(32), comment="动作类型")
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="操作前状态")
    new_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="操作后状态")
    notes: Mapped[str] = mapped_column(String(2000), comment="备注")
    resolution_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="处理结果")
    resolution_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True, comment="处理金额")
    action_taken_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="操作时间")
