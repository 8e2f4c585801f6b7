"""
退款记录模型

退款本身由外部退款服务执行，这里只记录每次调用及其回执状态。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, Float
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base
from marketplace.utils.timeutil import utcnow


class RefundStatus:
    """退款状态"""
    REQUESTED = "Requested"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    ALL = (REQUESTED, PROCESSING, COMPLETED, FAILED)


class RefundTransaction(Base):
    """退款记录表"""
    __tablename__ = "refund_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    refund_number: Mapped[str] = mapped_column(String(50), unique=True, index=True, comment="退款单号")

    return_request_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("return_requests.id"), nullable=True, index=True, comment="关联售后单"
    )
    order_id: Mapped[int] = mapped_column(Integer, index=True, comment="父订单ID")
    sub_order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="子订单ID")

    amount: Mapped[float] = mapped_column(Float, comment="退款金额")
    status: Mapped[str] = mapped_column(String(32), default=RefundStatus.REQUESTED, index=True, comment="退款状态")
    provider_refund_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, comment="退款服务回执号")

    reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True, comment="退款原因")
    notes: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True, comment="备注")
    error_message: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True, comment="失败原因")
    initiated_by_user_id: Mapped[int] = mapped_column(Integer, comment="发起人")

    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="发起时间")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, comment="更新时间")
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, comment="到账时间")
