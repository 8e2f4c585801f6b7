"""
售后沟通消息

买家与卖家围绕售后单的留言，只追加不删除。
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import get_settings
from marketplace.models.return_request import ReturnRequestMessage
from marketplace.services.result import Ok, Result, not_found, unauthorized, validation_error
from marketplace.services.return_request_service import CaseContext, load_case, commit_or_conflict
from marketplace.utils.timeutil import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


def is_party(ctx: CaseContext, user_id: int, is_seller: bool) -> bool:
    """卖家端校验店铺归属，买家端校验是否为申请人"""
    if is_seller:
        return ctx.store.owner_user_id == user_id
    return ctx.return_request.buyer_id == user_id


class MessageService:
    """售后沟通消息服务"""

    def __init__(self, db: AsyncSession, now: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._now = now or utcnow

    async def add_message(
        self,
        return_request_id: int,
        sender_id: int,
        content: str,
        is_from_seller: bool,
    ) -> Result[ReturnRequestMessage]:
        """发送消息；卖家的第一条消息算作首次响应"""
        content = (content or "").strip()
        if not content:
            return validation_error("消息内容不能为空")
        if len(content) > settings.message_max_length:
            return validation_error(f"消息内容不能超过 {settings.message_max_length} 字")

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        if not is_party(ctx, sender_id, is_from_seller):
            return unauthorized("无权在该售后单下发送消息")

        now = self._now()
        message = ReturnRequestMessage(
            return_request_id=return_request_id,
            sender_id=sender_id,
            content=content,
            is_from_seller=is_from_seller,
            sent_at=now,
            is_read=False,
        )
        self.db.add(message)

        rr = ctx.return_request
        rr.updated_at = now
        if is_from_seller and rr.seller_first_response_at is None:
            rr.seller_first_response_at = now

        error = await commit_or_conflict(self.db, return_request_id)
        if error:
            return error

        logger.debug(
            f"Message {message.id} added to return request {return_request_id} "
            f"by {'seller' if is_from_seller else 'buyer'} {sender_id}"
        )
        return Ok(message)

    async def mark_messages_as_read(
        self, return_request_id: int, user_id: int, is_seller_viewing: bool
    ) -> Result[int]:
        """
        将对方发来的未读消息标记为已读

        Returns:
            本次标记的条数
        """
        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        if not is_party(ctx, user_id, is_seller_viewing):
            return unauthorized("无权查看该售后单消息")

        # 卖家看的是买家发的，买家看的是卖家发的
        result = await self.db.execute(
            update(ReturnRequestMessage)
            .where(
                ReturnRequestMessage.return_request_id == return_request_id,
                ReturnRequestMessage.is_from_seller == (not is_seller_viewing),
                ReturnRequestMessage.is_read == False,  # noqa: E712
            )
            .values(is_read=True, read_at=self._now())
        )
        await self.db.commit()
        return Ok(result.rowcount or 0)

    async def get_unread_count(self, return_request_id: int, user_id: int, is_seller_viewing: bool) -> int:
        """未读条数；售后单不存在或无权查看时返回 0"""
        ctx = await load_case(self.db, return_request_id)
        if not ctx or not is_party(ctx, user_id, is_seller_viewing):
            return 0

        result = await self.db.execute(
            select(func.count(ReturnRequestMessage.id)).where(
                ReturnRequestMessage.return_request_id == return_request_id,
                ReturnRequestMessage.is_from_seller == (not is_seller_viewing),
                ReturnRequestMessage.is_read == False,  # noqa: E712
            )
        )
        return result.scalar() or 0

    async def get_messages(
        self, return_request_id: int, user_id: int, is_seller_viewing: bool
    ) -> Result[List[ReturnRequestMessage]]:
        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        if not is_party(ctx, user_id, is_seller_viewing):
            return unauthorized("无权查看该售后单消息")

        result = await self.db.execute(
            select(ReturnRequestMessage)
            .where(ReturnRequestMessage.return_request_id == return_request_id)
            .order_by(ReturnRequestMessage.sent_at.asc(), ReturnRequestMessage.id.asc())
        )
        return Ok(list(result.scalars().all()))
