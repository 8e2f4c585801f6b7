"""
退款服务客户端

退款的实际执行由外部退款服务完成，本模块只负责发起调用并返回回执。
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from marketplace.config import get_settings
from marketplace.models.refund import RefundStatus

logger = logging.getLogger(__name__)
settings = get_settings()


class RefundError(Exception):
    """退款服务调用失败"""


@dataclass
class RefundResult:
    """退款服务回执"""
    provider_refund_id: Optional[str]
    status: str = RefundStatus.REQUESTED


class RefundCollaborator(Protocol):
    async def process_partial_refund(
        self,
        order_id: int,
        sub_order_id: Optional[int],
        amount: float,
        reason: str,
        initiated_by_user_id: int,
        notes: Optional[str] = None,
        return_request_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        ...


class HttpRefundClient:
    """退款服务 HTTP 客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: 退款服务地址，不传则从配置读取
            token: 访问令牌，不传则从配置读取
            timeout: 请求超时（秒）
            transport: 自定义传输层（测试时替换为 MockTransport）
        """
        self.base_url = (base_url or settings.refund_service_url or "").rstrip("/")
        self.token = token if token is not None else settings.refund_service_token
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.refund_timeout_seconds,
            transport=transport,
        )

    def _headers(self, idempotency_key: Optional[str]) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        # 按退款单去重：同一售后单上的多笔退款各用各的键
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def process_partial_refund(
        self,
        order_id: int,
        sub_order_id: Optional[int],
        amount: float,
        reason: str,
        initiated_by_user_id: int,
        notes: Optional[str] = None,
        return_request_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """
        发起（部分）退款

        Args:
            idempotency_key: 幂等键，通常是本地退款单号

        Returns:
            退款回执

        Raises:
            RefundError: 未配置退款服务、网络错误或退款服务拒绝
        """
        if not self.base_url:
            raise RefundError("未配置退款服务地址")

        payload = {
            "order_id": order_id,
            "sub_order_id": sub_order_id,
            "amount": round(amount, 2),
            "reason": reason,
            "initiated_by_user_id": initiated_by_user_id,
            "notes": notes,
            "return_request_id": return_request_id,
        }
        try:
            response = await self._client.post(
                f"{self.base_url}/refunds",
                json=payload,
                headers=self._headers(idempotency_key),
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            raise RefundError(f"退款服务返回错误: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise RefundError(f"退款服务调用失败: {e}") from e

        status = result.get("status") or RefundStatus.REQUESTED
        if status == RefundStatus.FAILED:
            raise RefundError(result.get("message") or "退款服务拒绝退款")
        if status not in RefundStatus.ALL:
            logger.warning(f"Unknown refund status from provider: {status}")
            status = RefundStatus.PROCESSING

        return RefundResult(provider_refund_id=result.get("refund_id"), status=status)

    async def close(self):
        """关闭客户端连接"""
        await self._client.aclose()
