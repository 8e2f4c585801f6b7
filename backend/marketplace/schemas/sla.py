"""
SLA 相关 Schema
"""
from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from typing import Optional, List

from marketplace.models.return_request import ReturnRequestType


class SLAConfigSchema(BaseModel):
    """SLA 配置"""
    id: int
    category_id: Optional[int] = None
    request_type: Optional[ReturnRequestType] = None
    first_response_hours: int
    resolution_hours: int
    is_active: bool = True
    updated_at: Optional[datetime] = None
    updated_by_user_id: Optional[int] = None

    class Config:
        from_attributes = True


class SLAConfigCreate(BaseModel):
    """新建 SLA 配置"""
    category_id: Optional[int] = None
    request_type: Optional[ReturnRequestType] = None
    first_response_hours: int = Field(..., gt=0)
    resolution_hours: int = Field(..., gt=0)

    @model_validator(mode="after")
    def check_hours(self):
        if self.resolution_hours < self.first_response_hours:
            raise ValueError("处理时限不能短于首次响应时限")
        return self


class SLAConfigUpdate(BaseModel):
    """更新 SLA 配置（只更新传入的字段）"""
    first_response_hours: Optional[int] = Field(None, gt=0)
    resolution_hours: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None


class SLADeadlines(BaseModel):
    """SLA 截止时间"""
    first_response_deadline: datetime
    resolution_deadline: datetime


class SLAStatistics(BaseModel):
    """SLA 统计"""
    total_cases: int = 0
    first_response_sla_breaches: int = 0
    resolution_sla_breaches: int = 0
    cases_resolved_within_sla: int = 0
    average_response_time_hours: Optional[float] = None
    average_resolution_time_hours: Optional[float] = None


class SellerSLAStatistics(SLAStatistics):
    """店铺维度 SLA 统计"""
    store_id: int
    store_name: str = ""


class SellerSLAStatisticsListResponse(BaseModel):
    """店铺 SLA 统计列表"""
    total: int
    items: List[SellerSLAStatistics]


class SLABreachSweepResponse(BaseModel):
    """手动巡检结果"""
    newly_breached: int
