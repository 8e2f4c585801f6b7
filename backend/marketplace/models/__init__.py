"""
数据库模型
"""
from marketplace.models.order import (
    Store,
    Product,
    Order,
    SellerSubOrder,
    SubOrderItem,
    SubOrderStatusHistory,
    SubOrderStatus,
)
from marketplace.models.return_request import (
    ReturnRequest,
    ReturnRequestItem,
    ReturnRequestMessage,
    ReturnRequestAdminAction,
    ReturnRequestType,
    ReturnReason,
    ReturnStatus,
    ResolutionType,
    EscalationReason,
    AdminActionType,
)
from marketplace.models.sla_config import SLAConfig
from marketplace.models.refund import RefundTransaction, RefundStatus

__all__ = [
    "Store", "Product", "Order", "SellerSubOrder", "SubOrderItem", "SubOrderStatusHistory", "SubOrderStatus",
    "ReturnRequest", "ReturnRequestItem", "ReturnRequestMessage", "ReturnRequestAdminAction",
    "ReturnRequestType", "ReturnReason", "ReturnStatus", "ResolutionType", "EscalationReason", "AdminActionType",
    "SLAConfig",
    "RefundTransaction", "RefundStatus",
]
