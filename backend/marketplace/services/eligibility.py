"""
售后资格校验（只读）
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import get_settings
from marketplace.models.order import Order, SellerSubOrder, SubOrderStatus, SubOrderStatusHistory
from marketplace.models.return_request import ReturnRequest, ReturnStatus
from marketplace.services.result import ErrorKind
from marketplace.utils.timeutil import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    delivered_at: Optional[datetime] = None
    # 没有“已签收”状态记录时，用子订单更新时间估算签收时间
    delivery_date_estimated: bool = False


class EligibilityValidator:
    """判断买家能否对子订单发起售后"""

    def __init__(
        self,
        db: AsyncSession,
        return_window_days: Optional[int] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.return_window_days = return_window_days or settings.return_window_days
        self._now = now or utcnow

    async def get_delivery_date(self, sub_order: SellerSubOrder) -> tuple[datetime, bool]:
        """
        签收时间 = 最近一次变更为 Delivered 的时间；没有记录时回退到子订单更新时间

        Returns:
            (签收时间, 是否为估算值)
        """
        result = await self.db.execute(
            select(SubOrderStatusHistory.changed_at)
            .where(
                SubOrderStatusHistory.sub_order_id == sub_order.id,
                SubOrderStatusHistory.new_status == SubOrderStatus.DELIVERED,
            )
            .order_by(SubOrderStatusHistory.changed_at.desc())
            .limit(1)
        )
        delivered_at = result.scalar_one_or_none()
        if delivered_at is not None:
            return delivered_at, False

        logger.warning(
            f"Sub-order {sub_order.id} has no Delivered history entry, "
            f"using updated_at {sub_order.updated_at} as delivery date"
        )
        return sub_order.updated_at, True

    async def validate(self, sub_order_id: int, buyer_id: int) -> EligibilityResult:
        result = await self.db.execute(
            select(SellerSubOrder, Order.buyer_id)
            .join(Order, SellerSubOrder.order_id == Order.id)
            .where(SellerSubOrder.id == sub_order_id)
        )
        row = result.first()
        if not row:
            return EligibilityResult(False, "子订单不存在", ErrorKind.NOT_FOUND)

        sub_order, order_buyer_id = row
        if order_buyer_id != buyer_id:
            return EligibilityResult(False, "无权对该订单发起售后", ErrorKind.UNAUTHORIZED)

        if sub_order.status != SubOrderStatus.DELIVERED:
            return EligibilityResult(False, "仅已签收的订单可以发起售后", ErrorKind.INVALID_STATE)

        delivered_at, estimated = await self.get_delivery_date(sub_order)
        deadline = delivered_at + timedelta(days=self.return_window_days)
        if self._now() > deadline:
            return EligibilityResult(
                False,
                f"已超过售后期限，需在签收后 {self.return_window_days} 天内发起",
                ErrorKind.INVALID_STATE,
                delivered_at=delivered_at,
                delivery_date_estimated=estimated,
            )

        existing = await self.db.execute(
            select(ReturnRequest.id)
            .where(ReturnRequest.sub_order_id == sub_order_id)
            .where(ReturnRequest.status != ReturnStatus.REJECTED.value)
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            return EligibilityResult(
                False,
                "该子订单已有售后申请",
                ErrorKind.INVALID_STATE,
                delivered_at=delivered_at,
                delivery_date_estimated=estimated,
            )

        return EligibilityResult(True, delivered_at=delivered_at, delivery_date_estimated=estimated)
