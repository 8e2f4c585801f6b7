"""
应用配置模块
"""
from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """应用配置"""

    # 数据库配置
    database_url: str = "sqlite+aiosqlite:///./marketplace.db"

    # SQLAlchemy 日志（排查 SQL 时再打开）
    sqlalchemy_echo: bool = False

    # 服务配置
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = True
    log_level: str = "INFO"

    # 退货政策：签收后可发起退货的天数
    return_window_days: int = 30

    # SLA 兜底时长（没有任何 SLA 配置行时使用）
    sla_default_first_response_hours: int = 24
    sla_default_resolution_hours: int = 168

    # SLA 超时巡检 Worker（多进程部署时可关闭，改用单独 worker 进程）
    enable_sla_worker: bool = True
    sla_check_interval_minutes: float = 30.0

    # 子订单含多个类目商品时，用哪个商品的类目匹配 SLA：first_item / highest_value_item
    sla_category_strategy: str = "first_item"

    # 退款服务（外部）
    refund_service_url: Optional[str] = None
    refund_service_token: str = ""
    refund_timeout_seconds: float = 10.0

    # 卖家通知 webhook（外部，不配置则只记日志）
    notification_webhook_url: Optional[str] = None

    # 文本长度限制
    message_max_length: int = 2000
    seller_notes_max_length: int = 1000
    resolution_notes_max_length: int = 2000
    admin_notes_max_length: int = 2000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """获取应用配置（缓存）"""
    return Settings()
