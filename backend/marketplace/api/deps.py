"""
API 公共依赖

- 调用方身份由网关通过请求头传入（X-User-Id / X-Store-Id / X-Admin-User-Id）
- 外部协作方（退款服务、卖家通知）挂在 app.state 上，测试时可通过 dependency_overrides 替换
- 业务 Result -> HTTP 状态码
"""
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.models.order import Store
from marketplace.services.notification_client import build_notifier
from marketplace.services.refund_client import HttpRefundClient
from marketplace.services.result import Err, ErrorKind, Result

ERROR_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.DEPENDENCY_FAILURE: 502,
}


def raise_for_error(kind: ErrorKind, message: str):
    raise HTTPException(status_code=ERROR_STATUS_CODES.get(kind, 400), detail=message)


def unwrap(result: Result):
    """Ok 返回值，Err 转成 HTTPException"""
    if isinstance(result, Err):
        raise_for_error(result.kind, result.message)
    return result.value


@dataclass
class SellerActor:
    user_id: int
    store_id: int


async def get_buyer_id(x_user_id: int = Header(..., description="买家用户ID")) -> int:
    return x_user_id


async def get_admin_id(x_admin_user_id: int = Header(..., description="管理员用户ID")) -> int:
    return x_admin_user_id


async def get_seller(
    x_user_id: int = Header(..., description="卖家用户ID"),
    x_store_id: int = Header(..., description="店铺ID"),
    db: AsyncSession = Depends(get_db),
) -> SellerActor:
    """卖家身份：用户必须是店铺所有者"""
    result = await db.execute(select(Store.owner_user_id).where(Store.id == x_store_id))
    owner_user_id = result.scalar_one_or_none()
    if owner_user_id is None:
        raise HTTPException(status_code=404, detail="店铺不存在")
    if owner_user_id != x_user_id:
        raise HTTPException(status_code=403, detail="无权操作该店铺")
    return SellerActor(user_id=x_user_id, store_id=x_store_id)


def get_refund_client(request: Request):
    client = getattr(request.app.state, "refund_client", None)
    if client is None:
        client = HttpRefundClient()
        request.app.state.refund_client = client
    return client


def get_notifier(request: Request):
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        notifier = build_notifier()
        request.app.state.notifier = notifier
    return notifier
