"""
SLA 类目解析

子订单可能包含多个类目的商品，SLA 只按一个类目匹配；取哪个商品的类目由策略决定：
- first_item：子订单第一行商品（默认）
- highest_value_item：金额（单价 × 数量）最高的商品
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import get_settings
from marketplace.models.order import Product, SubOrderItem

settings = get_settings()

FIRST_ITEM = "first_item"
HIGHEST_VALUE_ITEM = "highest_value_item"
STRATEGIES = (FIRST_ITEM, HIGHEST_VALUE_ITEM)


class CategoryLookup:
    """根据子订单商品解析类目ID"""

    def __init__(self, db: AsyncSession, strategy: Optional[str] = None):
        self.db = db
        self.strategy = strategy or settings.sla_category_strategy
        if self.strategy not in STRATEGIES:
            raise ValueError(f"未知的类目策略: {self.strategy}")

    async def resolve_category_id(self, sub_order_id: int) -> Optional[int]:
        stmt = (
            select(Product.category_id)
            .select_from(SubOrderItem)
            .join(Product, SubOrderItem.product_id == Product.id)
            .where(SubOrderItem.sub_order_id == sub_order_id)
        )
        if self.strategy == HIGHEST_VALUE_ITEM:
            stmt = stmt.order_by((SubOrderItem.unit_price * SubOrderItem.quantity).desc(), SubOrderItem.id.asc())
        else:
            stmt = stmt.order_by(SubOrderItem.id.asc())

        result = await self.db.execute(stmt.limit(1))
        return result.scalar_one_or_none()
