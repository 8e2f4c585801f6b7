"""
Pydantic 模式定义
"""
from marketplace.schemas.return_request import (
    ReturnRequestSchema,
    ReturnRequestListResponse,
    ReturnRequestCreate,
    AdminActionSchema,
    MessageSchema,
    RefundTransactionSchema,
    ResolutionOutcomeSchema,
)
from marketplace.schemas.sla import SLAConfigSchema, SLAStatistics, SellerSLAStatistics

__all__ = [
    "ReturnRequestSchema", "ReturnRequestListResponse", "ReturnRequestCreate",
    "AdminActionSchema", "MessageSchema", "RefundTransactionSchema", "ResolutionOutcomeSchema",
    "SLAConfigSchema", "SLAStatistics", "SellerSLAStatistics",
]
