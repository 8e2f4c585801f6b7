"""
SLA 服务

- 按类目 + 申请类型解析 SLA 配置，计算首次响应/处理截止时间
- 超时巡检：标记已超时的售后单（可重复执行）
- SLA 统计
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from marketplace.config import get_settings
from marketplace.models.order import SellerSubOrder, Store
from marketplace.models.return_request import ReturnRequest, ReturnStatus, OPEN_STATUSES
from marketplace.models.sla_config import SLAConfig
from marketplace.schemas.sla import SLAStatistics, SellerSLAStatistics
from marketplace.services.result import Ok, Result, not_found, validation_error
from marketplace.utils.timeutil import utcnow, hours_between

logger = logging.getLogger(__name__)
settings = get_settings()


class SLAService:
    """SLA 服务"""

    # 已处理（不再计算处理超时）的状态
    SETTLED_STATUSES = (ReturnStatus.RESOLVED.value, ReturnStatus.COMPLETED.value)

    def __init__(self, db: AsyncSession, now: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._now = now or utcnow

    # =====================================================
    # 配置解析
    # =====================================================

    async def _find_config(self, category_id: Optional[int], request_type: Optional[str]) -> Optional[SLAConfig]:
        stmt = select(SLAConfig).where(SLAConfig.is_active == True)  # noqa: E712
        if category_id is None:
            stmt = stmt.where(SLAConfig.category_id.is_(None))
        else:
            stmt = stmt.where(SLAConfig.category_id == category_id)
        if request_type is None:
            stmt = stmt.where(SLAConfig.request_type.is_(None))
        else:
            stmt = stmt.where(SLAConfig.request_type == request_type)
        result = await self.db.execute(stmt.order_by(SLAConfig.id.asc()).limit(1))
        return result.scalar_one_or_none()

    async def get_sla_config(self, category_id: Optional[int], request_type: str) -> SLAConfig:
        """
        获取适用的 SLA 配置

        匹配顺序：(类目, 类型) > (类目, 空) > (空, 类型) > (空, 空) > 内置默认值
        """
        request_type = getattr(request_type, "value", request_type)
        candidates = []
        for key in ((category_id, request_type), (category_id, None), (None, request_type), (None, None)):
            if key not in candidates:
                candidates.append(key)

        for cat, req_type in candidates:
            config = await self._find_config(cat, req_type)
            if config:
                return config

        # 没有任何配置行：返回内置默认值（不入库）
        return SLAConfig(
            category_id=None,
            request_type=None,
            first_response_hours=settings.sla_default_first_response_hours,
            resolution_hours=settings.sla_default_resolution_hours,
            is_active=True,
        )

    async def calculate_sla_deadlines(
        self,
        requested_at: datetime,
        category_id: Optional[int],
        request_type: str,
    ) -> Tuple[datetime, datetime]:
        """返回 (首次响应截止, 处理截止)"""
        config = await self.get_sla_config(category_id, request_type)
        return (
            requested_at + timedelta(hours=config.first_response_hours),
            requested_at + timedelta(hours=config.resolution_hours),
        )

    # =====================================================
    # 超时巡检
    # =====================================================

    async def check_and_update_sla_breaches(self, return_request_id: int) -> bool:
        """
        检查单个售后单是否新出现超时

        Returns:
            本次是否新标记了超时
        """
        result = await self.db.execute(
            select(ReturnRequest).where(ReturnRequest.id == return_request_id)
        )
        rr = result.scalar_one_or_none()
        if not rr:
            logger.warning(f"Return request {return_request_id} not found for SLA breach check")
            return False

        now = self._now()
        breach_detected = False

        if (
            not rr.first_response_sla_breached
            and rr.first_response_deadline is not None
            and rr.seller_first_response_at is None
            and now > rr.first_response_deadline
        ):
            rr.first_response_sla_breached = True
            breach_detected = True
            logger.info(f"First response SLA breached for return request {rr.return_number} (ID: {rr.id})")

        if (
            not rr.resolution_sla_breached
            and rr.resolution_deadline is not None
            and rr.status not in self.SETTLED_STATUSES
            and now > rr.resolution_deadline
        ):
            rr.resolution_sla_breached = True
            breach_detected = True
            logger.info(f"Resolution SLA breached for return request {rr.return_number} (ID: {rr.id})")

        if not breach_detected:
            return False

        rr.updated_at = now
        try:
            await self.db.commit()
        except StaleDataError:
            # 与用户操作并发：本轮放弃，下次巡检重新判断
            await self.db.rollback()
            logger.warning(f"Return request {return_request_id} changed during SLA check, will retry next sweep")
            return False
        return True

    async def process_sla_breaches(self) -> int:
        """
        巡检所有处理中的售后单

        Returns:
            本次新标记超时的售后单数量
        """
        result = await self.db.execute(
            select(ReturnRequest.id)
            .where(ReturnRequest.status.in_(OPEN_STATUSES))
            .where(
                or_(
                    ReturnRequest.first_response_deadline.isnot(None),
                    ReturnRequest.resolution_deadline.isnot(None),
                )
            )
            .order_by(ReturnRequest.id.asc())
        )
        case_ids = list(result.scalars().all())

        breach_count = 0
        for case_id in case_ids:
            if await self.check_and_update_sla_breaches(case_id):
                breach_count += 1

        if breach_count > 0:
            logger.info(f"Processed SLA breaches: {breach_count} cases flagged")
        return breach_count

    # =====================================================
    # 统计
    # =====================================================

    def _date_conditions(self, from_date: Optional[datetime], to_date: Optional[datetime]) -> list:
        conditions = []
        if from_date:
            conditions.append(ReturnRequest.requested_at >= from_date)
        if to_date:
            conditions.append(ReturnRequest.requested_at <= to_date)
        return conditions

    @staticmethod
    def _calculate(rows) -> SLAStatistics:
        stats = SLAStatistics(total_cases=len(rows))
        response_hours: List[float] = []
        resolution_hours: List[float] = []

        for row in rows:
            if row.first_response_sla_breached:
                stats.first_response_sla_breaches += 1
            if row.resolution_sla_breached:
                stats.resolution_sla_breaches += 1
            if not row.resolution_sla_breached and row.status in SLAService.SETTLED_STATUSES:
                stats.cases_resolved_within_sla += 1
            if row.seller_first_response_at is not None:
                response_hours.append(hours_between(row.requested_at, row.seller_first_response_at))
            end_time = row.resolved_at or row.completed_at
            if end_time is not None:
                resolution_hours.append(hours_between(row.requested_at, end_time))

        if response_hours:
            stats.average_response_time_hours = sum(response_hours) / len(response_hours)
        if resolution_hours:
            stats.average_resolution_time_hours = sum(resolution_hours) / len(resolution_hours)
        return stats

    def _stats_query(self):
        return select(
            ReturnRequest.status,
            ReturnRequest.requested_at,
            ReturnRequest.seller_first_response_at,
            ReturnRequest.resolved_at,
            ReturnRequest.completed_at,
            ReturnRequest.first_response_sla_breached,
            ReturnRequest.resolution_sla_breached,
            SellerSubOrder.store_id,
        ).select_from(ReturnRequest).join(SellerSubOrder, ReturnRequest.sub_order_id == SellerSubOrder.id)

    async def get_sla_statistics(
        self,
        store_id: Optional[int] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> SLAStatistics:
        """平台或单个店铺的 SLA 统计"""
        conditions = self._date_conditions(from_date, to_date)
        if store_id is not None:
            conditions.append(SellerSubOrder.store_id == store_id)

        stmt = self._stats_query()
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.db.execute(stmt)
        return self._calculate(result.all())

    async def get_all_seller_sla_statistics(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> List[SellerSLAStatistics]:
        """按店铺分组的 SLA 统计（按售后单数倒序）"""
        stmt = self._stats_query()
        conditions = self._date_conditions(from_date, to_date)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.db.execute(stmt)

        grouped: Dict[int, list] = {}
        for row in result.all():
            grouped.setdefault(row.store_id, []).append(row)
        if not grouped:
            return []

        store_result = await self.db.execute(
            select(Store.id, Store.store_name).where(Store.id.in_(list(grouped.keys())))
        )
        store_names = {row.id: row.store_name for row in store_result.all()}

        items = []
        for store_id, rows in grouped.items():
            stats = self._calculate(rows)
            items.append(
                SellerSLAStatistics(
                    store_id=store_id,
                    store_name=store_names.get(store_id, ""),
                    **stats.model_dump(),
                )
            )
        return sorted(items, key=lambda s: s.total_cases, reverse=True)

    # =====================================================
    # 配置维护
    # =====================================================

    async def list_configs(self, include_inactive: bool = True) -> List[SLAConfig]:
        stmt = select(SLAConfig)
        if not include_inactive:
            stmt = stmt.where(SLAConfig.is_active == True)  # noqa: E712
        result = await self.db.execute(
            stmt.order_by(SLAConfig.category_id.asc(), SLAConfig.request_type.asc(), SLAConfig.id.asc())
        )
        return list(result.scalars().all())

    async def create_config(
        self,
        category_id: Optional[int],
        request_type: Optional[str],
        first_response_hours: int,
        resolution_hours: int,
        updated_by_user_id: Optional[int] = None,
    ) -> Result[SLAConfig]:
        """新建 SLA 配置（同一维度只允许一条启用中的配置）"""
        request_type = getattr(request_type, "value", request_type)
        error = self._validate_hours(first_response_hours, resolution_hours)
        if error:
            return error

        if await self._find_config(category_id, request_type):
            return validation_error("该类目和申请类型已存在启用中的 SLA 配置")

        config = SLAConfig(
            category_id=category_id,
            request_type=request_type,
            first_response_hours=first_response_hours,
            resolution_hours=resolution_hours,
            is_active=True,
            updated_by_user_id=updated_by_user_id,
        )
        self.db.add(config)
        await self.db.commit()
        logger.info(
            f"SLA config created: category={category_id} type={request_type} "
            f"first_response={first_response_hours}h resolution={resolution_hours}h"
        )
        return Ok(config)

    async def update_config(
        self,
        config_id: int,
        updated_by_user_id: Optional[int] = None,
        first_response_hours: Optional[int] = None,
        resolution_hours: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> Result[SLAConfig]:
        result = await self.db.execute(select(SLAConfig).where(SLAConfig.id == config_id))
        config = result.scalar_one_or_none()
        if not config:
            return not_found("SLA 配置不存在")

        new_first = first_response_hours if first_response_hours is not None else config.first_response_hours
        new_resolution = resolution_hours if resolution_hours is not None else config.resolution_hours
        error = self._validate_hours(new_first, new_resolution)
        if error:
            return error

        if is_active and not config.is_active:
            existing = await self._find_config(config.category_id, config.request_type)
            if existing and existing.id != config.id:
                return validation_error("该类目和申请类型已存在启用中的 SLA 配置")

        config.first_response_hours = new_first
        config.resolution_hours = new_resolution
        if is_active is not None:
            config.is_active = is_active
        config.updated_by_user_id = updated_by_user_id
        config.updated_at = self._now()
        await self.db.commit()
        return Ok(config)

    @staticmethod
    def _validate_hours(first_response_hours: int, resolution_hours: int):
        if first_response_hours <= 0 or resolution_hours <= 0:
            return validation_error("SLA 时限必须大于 0")
        if resolution_hours < first_response_hours:
            return validation_error("处理时限不能短于首次响应时限")
        return None
