"""
订单模型

多商家订单：一个 Order 按店铺拆成多个 SellerSubOrder（子订单），
退货/纠纷以子订单为单位发起。
"""
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, ForeignKey, Float
from sqlalchemy.orm import Mapped, mapped_column, relationship
from typing import List, Optional

from marketplace.database import Base
from marketplace.utils.timeutil import utcnow


class SubOrderStatus:
    """子订单状态"""
    PENDING = "Pending"
    PAID = "Paid"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class Store(Base):
    """店铺表"""
    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_user_id: Mapped[int] = mapped_column(Integer, index=True, comment="店主用户ID")
    store_name: Mapped[str] = mapped_column(String(128), comment="店铺名称")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="记录创建时间")


class Product(Base):
    """商品表（仅保留退货流程需要的字段）"""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(256), comment="商品名称")
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True, comment="类目ID")


class Order(Base):
    """订单表（买家下单的整单）"""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, comment="订单号")
    buyer_id: Mapped[int] = mapped_column(Integer, index=True, comment="买家用户ID")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="下单时间")

    sub_orders: Mapped[List["SellerSubOrder"]] = relationship(
        "SellerSubOrder", back_populates="order", cascade="all, delete-orphan"
    )


class SellerSubOrder(Base):
    """子订单表（整单中归属某一个店铺的部分）"""
    __tablename__ = "seller_sub_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), index=True, comment="父订单ID")
    store_id: Mapped[int] = mapped_column(Integer, ForeignKey("stores.id"), index=True, comment="店铺ID")
    sub_order_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, comment="子订单号")
    status: Mapped[str] = mapped_column(String(32), default=SubOrderStatus.PENDING, index=True, comment="子订单状态")

    # 子订单总额（商品 + 运费）
    total_amount: Mapped[float] = mapped_column(Float, default=0, comment="子订单总金额")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="记录创建时间")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, comment="记录更新时间")

    order: Mapped["Order"] = relationship("Order", back_populates="sub_orders")
    store: Mapped["Store"] = relationship("Store")
    items: Mapped[List["SubOrderItem"]] = relationship(
        "SubOrderItem", back_populates="sub_order", cascade="all, delete-orphan", order_by="SubOrderItem.id"
    )
    status_history: Mapped[List["SubOrderStatusHistory"]] = relationship(
        "SubOrderStatusHistory", back_populates="sub_order", cascade="all, delete-orphan"
    )


class SubOrderItem(Base):
    """子订单商品行"""
    __tablename__ = "sub_order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sub_order_id: Mapped[int] = mapped_column(Integer, ForeignKey("seller_sub_orders.id"), index=True, comment="子订单ID")
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("products.id"), index=True, comment="商品ID")
    product_title: Mapped[str] = mapped_column(String(256), default="", comment="下单时商品名称")

    # 数量和价格
    quantity: Mapped[int] = mapped_column(Integer, default=1, comment="购买数量")
    unit_price: Mapped[float] = mapped_column(Float, default=0, comment="下单时单价")

    sub_order: Mapped["SellerSubOrder"] = relationship("SellerSubOrder", back_populates="items")


class SubOrderStatusHistory(Base):
    """子订单状态变更历史"""
    __tablename__ = "sub_order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sub_order_id: Mapped[int] = mapped_column(Integer, ForeignKey("seller_sub_orders.id"), index=True, comment="子订单ID")
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, comment="变更前状态")
    new_status: Mapped[str] = mapped_column(String(32), index=True, comment="变更后状态")
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, comment="变更时间")

    sub_order: Mapped["SellerSubOrder"] = relationship("SellerSubOrder", back_populates="status_history")
