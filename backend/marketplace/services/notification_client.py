"""
卖家通知

只负责“有新售后单”的信号投递，失败由调用方记录日志，不影响主流程。
"""
import logging
from typing import Optional, Protocol

import httpx

from marketplace.config import get_settings
from marketplace.models.return_request import ReturnRequest

logger = logging.getLogger(__name__)
settings = get_settings()


class NotificationError(Exception):
    """通知投递失败"""


class NotificationCollaborator(Protocol):
    async def notify_return_opened(self, store_id: int, return_request: ReturnRequest) -> None:
        ...


class LogNotifier:
    """未配置 webhook 时只写日志"""

    async def notify_return_opened(self, store_id: int, return_request: ReturnRequest) -> None:
        logger.info(
            f"Return request {return_request.return_number} opened for store {store_id}"
        )


class WebhookNotifier:
    """通过 webhook 通知卖家"""

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=timeout)

    async def notify_return_opened(self, store_id: int, return_request: ReturnRequest) -> None:
        payload = {
            "event": "return_request.opened",
            "store_id": store_id,
            "return_request_id": return_request.id,
            "return_number": return_request.return_number,
            "request_type": return_request.request_type,
            "refund_amount": return_request.refund_amount,
            "first_response_deadline": (
                return_request.first_response_deadline.isoformat()
                if return_request.first_response_deadline else None
            ),
        }
        try:
            response = await self._client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"卖家通知发送失败: {e}") from e

    async def close(self):
        await self._client.aclose()


def build_notifier(webhook_url: Optional[str] = None):
    """按配置选择通知实现"""
    url = webhook_url or settings.notification_webhook_url
    if url:
        return WebhookNotifier(url)
    return LogNotifier()
