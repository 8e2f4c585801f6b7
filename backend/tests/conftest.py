"""
测试公共夹具：内存 SQLite、可控时钟、假的退款服务 / 通知
"""
from datetime import datetime, timedelta
from itertools import count
from typing import Awaitable, Callable, List, Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace import models  # noqa: F401
from marketplace.database import build_engine, build_session_maker, create_schema
from marketplace.models.order import (
    Order,
    Product,
    SellerSubOrder,
    Store,
    SubOrderItem,
    SubOrderStatus,
    SubOrderStatusHistory,
)
from marketplace.models.refund import RefundStatus
from marketplace.services.notification_client import NotificationError
from marketplace.services.refund_client import RefundError, RefundResult

BUYER_ID = 100
SELLER_USER_ID = 200
ADMIN_ID = 900


class Clock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeRefundClient:
    def __init__(
        self,
        status: str = RefundStatus.REQUESTED,
        fail: bool = False,
        during_call: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.status = status
        self.fail = fail
        # 模拟退款请求在途期间发生的其他写操作
        self.during_call = during_call
        self.calls: List[dict] = []
        self.idempotency_keys: List[str] = []
        self._ids = count(1)

    async def process_partial_refund(
        self,
        order_id,
        sub_order_id,
        amount,
        reason,
        initiated_by_user_id,
        notes=None,
        return_request_id=None,
        idempotency_key=None,
    ) -> RefundResult:
        self.calls.append(
            {
                "order_id": order_id,
                "sub_order_id": sub_order_id,
                "amount": amount,
                "initiated_by_user_id": initiated_by_user_id,
                "return_request_id": return_request_id,
            }
        )
        self.idempotency_keys.append(idempotency_key)
        if self.during_call is not None:
            await self.during_call()
        if self.fail:
            raise RefundError("refund provider unavailable")
        return RefundResult(provider_refund_id=f"PRV-{next(self._ids)}", status=self.status)


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def notify_return_opened(self, store_id, return_request):
        if self.fail:
            raise NotificationError("webhook down")
        self.sent.append((store_id, return_request.return_number))


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2024, 3, 1, 12, 0, 0))


@pytest.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite://")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def refund_client() -> FakeRefundClient:
    return FakeRefundClient()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


class MarketplaceFactory:
    """构造一笔已签收的子订单"""

    def __init__(self, db: AsyncSession, clock: Clock):
        self.db = db
        self.clock = clock
        self._seq = count(1)

    async def store(self, owner_user_id: int = SELLER_USER_ID, name: str = "测试店铺") -> Store:
        store = Store(owner_user_id=owner_user_id, store_name=name)
        self.db.add(store)
        await self.db.commit()
        return store

    async def sub_order(
        self,
        store: Optional[Store] = None,
        buyer_id: int = BUYER_ID,
        status: str = SubOrderStatus.DELIVERED,
        delivered_days_ago: Optional[float] = 5,
        items=((50.0, 2, 1), (30.0, 1, 2)),
        shipping: float = 10.0,
    ) -> SellerSubOrder:
        """
        Args:
            items: (单价, 数量, 类目ID) 列表
            delivered_days_ago: None 表示不写签收历史
        """
        seq = next(self._seq)
        if store is None:
            store = await self.store()

        order = Order(order_number=f"ORD-{seq:06d}", buyer_id=buyer_id, created_at=self.clock() - timedelta(days=10))
        self.db.add(order)
        await self.db.flush()

        total = sum(price * qty for price, qty, _ in items) + shipping
        sub_order = SellerSubOrder(
            order_id=order.id,
            store_id=store.id,
            sub_order_number=f"SUB-{seq:06d}",
            status=status,
            total_amount=total,
            created_at=self.clock() - timedelta(days=10),
            updated_at=self.clock() - timedelta(days=1),
        )
        self.db.add(sub_order)
        await self.db.flush()

        for index, (price, qty, category_id) in enumerate(items):
            product = Product(title=f"商品{seq}-{index}", category_id=category_id)
            self.db.add(product)
            await self.db.flush()
            self.db.add(
                SubOrderItem(
                    sub_order_id=sub_order.id,
                    product_id=product.id,
                    product_title=product.title,
                    quantity=qty,
                    unit_price=price,
                )
            )

        if status == SubOrderStatus.DELIVERED and delivered_days_ago is not None:
            self.db.add(
                SubOrderStatusHistory(
                    sub_order_id=sub_order.id,
                    previous_status=SubOrderStatus.SHIPPED,
                    new_status=SubOrderStatus.DELIVERED,
                    changed_at=self.clock() - timedelta(days=delivered_days_ago),
                )
            )
        await self.db.commit()
        return sub_order

    async def items(self, sub_order_id: int) -> List[SubOrderItem]:
        result = await self.db.execute(
            select(SubOrderItem).where(SubOrderItem.sub_order_id == sub_order_id).order_by(SubOrderItem.id.asc())
        )
        return list(result.scalars().all())


@pytest.fixture
def factory(db, clock) -> MarketplaceFactory:
    return MarketplaceFactory(db, clock)
