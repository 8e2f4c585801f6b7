import json

import httpx
import pytest

from marketplace.models.refund import RefundStatus
from marketplace.services.refund_client import HttpRefundClient, RefundError


def refund_request(**overrides) -> dict:
    params = dict(
        order_id=1,
        sub_order_id=2,
        amount=10.0,
        reason="售后单退款",
        initiated_by_user_id=200,
        return_request_id=1,
    )
    params.update(overrides)
    return params


@pytest.fixture
def provider():
    """记录收到的请求，按顺序返回预设回执"""
    received = []
    replies = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        status_code, body = replies.pop(0) if replies else (200, {"status": "Processing", "refund_id": "PRV-1"})
        return httpx.Response(status_code, json=body)

    return received, replies, httpx.MockTransport(handler)


async def test_idempotency_key_follows_each_refund(provider):
    received, _, transport = provider
    client = HttpRefundClient(base_url="http://refunds.test", token="secret", transport=transport)

    await client.process_partial_refund(**refund_request(amount=10.0), idempotency_key="RFD-20240301-AAAA0001")
    await client.process_partial_refund(**refund_request(amount=140.0), idempotency_key="RFD-20240301-AAAA0002")
    await client.close()

    assert [r.headers["Idempotency-Key"] for r in received] == ["RFD-20240301-AAAA0001", "RFD-20240301-AAAA0002"]
    assert [json.loads(r.content)["amount"] for r in received] == [10.0, 140.0]
    assert received[0].headers["Authorization"] == "Bearer secret"


async def test_receipt_status_mapping(provider):
    _, replies, transport = provider
    client = HttpRefundClient(base_url="http://refunds.test", token="", transport=transport)
    replies.extend(
        [
            (200, {"status": "Completed", "refund_id": "PRV-9"}),
            (200, {"status": "Settling"}),
            (200, {"status": "Failed", "message": "余额不足"}),
            (503, {"message": "down"}),
        ]
    )

    completed = await client.process_partial_refund(**refund_request(), idempotency_key="RFD-1")
    unknown = await client.process_partial_refund(**refund_request(), idempotency_key="RFD-2")
    with pytest.raises(RefundError, match="余额不足"):
        await client.process_partial_refund(**refund_request(), idempotency_key="RFD-3")
    with pytest.raises(RefundError, match="HTTP 503"):
        await client.process_partial_refund(**refund_request(), idempotency_key="RFD-4")
    await client.close()

    assert (completed.status, completed.provider_refund_id) == (RefundStatus.COMPLETED, "PRV-9")
    assert unknown.status == RefundStatus.PROCESSING


async def test_missing_service_url_raises(provider):
    _, _, transport = provider
    client = HttpRefundClient(transport=transport)
    # 未配置退款服务地址
    client.base_url = ""

    with pytest.raises(RefundError):
        await client.process_partial_refund(**refund_request())
    await client.close()
