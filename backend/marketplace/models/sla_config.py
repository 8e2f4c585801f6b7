"""
SLA 配置模型
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base
from marketplace.utils.timeutil import utcnow


class SLAConfig(Base):
    """
    SLA 配置表

    category_id / request_type 为空表示“适用全部”，匹配时越具体越优先：
    (类目, 类型) > (类目, 空) > (空, 类型) > (空, 空)
    """
    __tablename__ = "sla_configs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True, comment="类目ID")
    request_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="申请类型")

    first_response_hours: Mapped[int] = mapped_column(Integer, comment="首次响应时限（小时）")
    resolution_hours: Mapped[int] = mapped_column(Integer, comment="处理时限（小时）")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, comment="是否启用")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="创建时间")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, comment="更新时间")
    updated_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="最后修改人")
