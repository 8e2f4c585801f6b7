"""
API 路由
"""
from fastapi import APIRouter

from marketplace.api import returns, seller_returns, admin_returns, sla

api_router = APIRouter()

api_router.include_router(returns.router, prefix="/returns", tags=["买家售后"])
api_router.include_router(seller_returns.router, prefix="/seller/returns", tags=["卖家售后"])
api_router.include_router(admin_returns.router, prefix="/admin/returns", tags=["平台售后"])
api_router.include_router(sla.router, prefix="/sla", tags=["SLA"])
