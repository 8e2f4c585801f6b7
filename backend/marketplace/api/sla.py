"""
SLA 配置与统计 API（平台后台）
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.api.deps import get_admin_id, unwrap
from marketplace.database import get_db
from marketplace.models.return_request import ReturnRequestType
from marketplace.schemas.sla import (
    SLABreachSweepResponse,
    SLAConfigCreate,
    SLAConfigSchema,
    SLAConfigUpdate,
    SLADeadlines,
    SLAStatistics,
    SellerSLAStatisticsListResponse,
)
from marketplace.services.sla_service import SLAService
from marketplace.utils.timeutil import utcnow

router = APIRouter()


@router.get("/configs", response_model=List[SLAConfigSchema])
async def list_sla_configs(
    include_inactive: bool = Query(True, description="是否包含已停用配置"),
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """SLA 配置列表"""
    return await SLAService(db).list_configs(include_inactive)


@router.post("/configs", response_model=SLAConfigSchema, status_code=201)
async def create_sla_config(
    payload: SLAConfigCreate,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    result = await SLAService(db).create_config(
        payload.category_id,
        payload.request_type.value if payload.request_type else None,
        payload.first_response_hours,
        payload.resolution_hours,
        updated_by_user_id=admin_id,
    )
    return unwrap(result)


@router.patch("/configs/{config_id}", response_model=SLAConfigSchema)
async def update_sla_config(
    config_id: int,
    payload: SLAConfigUpdate,
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    result = await SLAService(db).update_config(
        config_id,
        updated_by_user_id=admin_id,
        first_response_hours=payload.first_response_hours,
        resolution_hours=payload.resolution_hours,
        is_active=payload.is_active,
    )
    return unwrap(result)


@router.get("/deadlines", response_model=SLADeadlines)
async def preview_deadlines(
    request_type: ReturnRequestType = Query(ReturnRequestType.RETURN, description="申请类型"),
    category_id: Optional[int] = Query(None, description="类目ID"),
    requested_at: Optional[datetime] = Query(None, description="申请时间，默认当前时间"),
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """按当前配置预览截止时间"""
    first_response_deadline, resolution_deadline = await SLAService(db).calculate_sla_deadlines(
        requested_at or utcnow(), category_id, request_type.value
    )
    return SLADeadlines(
        first_response_deadline=first_response_deadline,
        resolution_deadline=resolution_deadline,
    )


@router.get("/statistics", response_model=SLAStatistics)
async def get_sla_statistics(
    store_id: Optional[int] = Query(None, description="店铺ID，不传为全平台"),
    from_date: Optional[datetime] = Query(None, description="开始日期"),
    to_date: Optional[datetime] = Query(None, description="结束日期"),
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    return await SLAService(db).get_sla_statistics(store_id, from_date, to_date)


@router.get("/statistics/sellers", response_model=SellerSLAStatisticsListResponse)
async def get_seller_sla_statistics(
    from_date: Optional[datetime] = Query(None, description="开始日期"),
    to_date: Optional[datetime] = Query(None, description="结束日期"),
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """按店铺的 SLA 统计"""
    items = await SLAService(db).get_all_seller_sla_statistics(from_date, to_date)
    return SellerSLAStatisticsListResponse(total=len(items), items=items)


@router.post("/sweep", response_model=SLABreachSweepResponse)
async def run_breach_sweep(
    admin_id: int = Depends(get_admin_id),
    db: AsyncSession = Depends(get_db),
):
    """手动执行一次超时巡检"""
    newly_breached = await SLAService(db).process_sla_breaches()
    return SLABreachSweepResponse(newly_breached=newly_breached)
