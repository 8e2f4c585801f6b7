import pytest
from httpx import ASGITransport, AsyncClient

from marketplace.api.deps import get_notifier, get_refund_client
from marketplace.database import get_db
from marketplace.main import app
from marketplace.models.order import SubOrderStatus
from marketplace.utils.timeutil import utcnow

from conftest import ADMIN_ID, BUYER_ID, SELLER_USER_ID, Clock, FakeRefundClient

BUYER = {"X-User-Id": str(BUYER_ID)}
ADMIN = {"X-Admin-User-Id": str(ADMIN_ID)}


def seller_headers(store_id: int, user_id: int = SELLER_USER_ID) -> dict:
    return {"X-User-Id": str(user_id), "X-Store-Id": str(store_id)}


@pytest.fixture
def clock() -> Clock:
    # 接口层使用真实时间
    return Clock(utcnow())


@pytest.fixture
async def client(session_maker, refund_client, notifier):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_refund_client] = lambda: refund_client
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def open_case(client, sub_order_id: int, **overrides) -> dict:
    payload = {"sub_order_id": sub_order_id, "reason": "Defective", "description": "屏幕碎了"}
    payload.update(overrides)
    response = await client.post("/api/returns", json=payload, headers=BUYER)
    assert response.status_code == 201, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_buyer_seller_admin_flow(client, factory, refund_client, notifier):
    sub_order = await factory.sub_order()
    seller = seller_headers(sub_order.store_id)

    eligibility = await client.get("/api/returns/eligibility", params={"sub_order_id": sub_order.id}, headers=BUYER)
    assert eligibility.json()["eligible"] is True

    case = await open_case(client, sub_order.id)
    assert case["status"] == "Requested"
    assert case["refund_amount"] == 140.0
    assert notifier.sent == [(sub_order.store_id, case["return_number"])]

    mine = await client.get("/api/returns", headers=BUYER)
    assert mine.json()["total"] == 1

    approved = await client.post(f"/api/seller/returns/{case['id']}/approve", json={"notes": "同意退货"}, headers=seller)
    assert approved.status_code == 200
    assert approved.json()["status"] == "Approved"
    assert approved.json()["seller_first_response_at"] is not None

    sent = await client.post(f"/api/seller/returns/{case['id']}/messages", json={"content": "请寄回"}, headers=seller)
    assert sent.status_code == 201
    unread = await client.get(f"/api/returns/{case['id']}/messages/unread-count", headers=BUYER)
    assert unread.json() == {"unread": 1}
    marked = await client.post(f"/api/returns/{case['id']}/messages/read", headers=BUYER)
    assert marked.json() == {"updated": 1}

    resolved = await client.post(
        f"/api/seller/returns/{case['id']}/resolve",
        json={"resolution_type": "FullRefund", "notes": "已收到退货"},
        headers=seller,
    )
    assert resolved.status_code == 200, resolved.text
    body = resolved.json()
    assert body["return_request"]["status"] == "Resolved"
    assert body["refund_error"] is None
    assert refund_client.calls[0]["amount"] == 140.0

    listed = await client.get("/api/admin/returns", params={"status": "Resolved"}, headers=ADMIN)
    assert listed.json()["total"] == 1

    confirmed = await client.post(
        f"/api/admin/returns/refunds/{body['refund']['id']}/confirm",
        json={"status": "Completed", "provider_refund_id": "PRV-1"},
        headers=ADMIN,
    )
    assert confirmed.status_code == 200
    detail = await client.get(f"/api/returns/{case['id']}", headers=BUYER)
    assert detail.json()["status"] == "Completed"


async def test_create_errors_map_to_status_codes(client, factory):
    shipped = await factory.sub_order(status=SubOrderStatus.SHIPPED)

    not_delivered = await client.post("/api/returns", json={"sub_order_id": shipped.id, "reason": "Damaged"}, headers=BUYER)
    missing = await client.post("/api/returns", json={"sub_order_id": 999, "reason": "Damaged"}, headers=BUYER)
    no_header = await client.post("/api/returns", json={"sub_order_id": shipped.id, "reason": "Damaged"})

    assert not_delivered.status_code == 409
    assert not_delivered.json()["detail"] == "仅已签收的订单可以发起售后"
    assert missing.status_code == 404
    assert no_header.status_code == 422


async def test_partial_return_over_api(client, factory):
    sub_order = await factory.sub_order()
    first, _ = await factory.items(sub_order.id)

    case = await open_case(
        client, sub_order.id, is_full_return=False, items=[{"sub_order_item_id": first.id, "quantity": 2}]
    )
    duplicate = await client.post(
        "/api/returns",
        json={
            "sub_order_id": sub_order.id,
            "reason": "Damaged",
            "is_full_return": False,
            "items": [{"sub_order_item_id": first.id, "quantity": 1}],
        },
        headers=BUYER,
    )

    assert case["refund_amount"] == 100.0
    assert case["items"][0]["quantity"] == 2
    assert duplicate.status_code == 409


async def test_duplicate_item_lines_are_rejected(client, factory):
    sub_order = await factory.sub_order()
    first, _ = await factory.items(sub_order.id)

    response = await client.post(
        "/api/returns",
        json={
            "sub_order_id": sub_order.id,
            "reason": "Damaged",
            "is_full_return": False,
            "items": [
                {"sub_order_item_id": first.id, "quantity": 1},
                {"sub_order_item_id": first.id, "quantity": 1},
            ],
        },
        headers=BUYER,
    )

    assert response.status_code == 422
    assert (await client.get("/api/returns", headers=BUYER)).json()["total"] == 0


async def test_seller_guards(client, factory):
    sub_order = await factory.sub_order()
    other_store = await factory.store(owner_user_id=SELLER_USER_ID + 1)
    case = await open_case(client, sub_order.id)

    no_notes = await client.post(f"/api/seller/returns/{case['id']}/reject", json={}, headers=seller_headers(sub_order.store_id))
    wrong_store = await client.post(
        f"/api/seller/returns/{case['id']}/approve", json={}, headers=seller_headers(other_store.id, SELLER_USER_ID + 1)
    )
    not_owner = await client.get("/api/seller/returns", headers=seller_headers(sub_order.store_id, SELLER_USER_ID + 1))

    assert no_notes.status_code == 400
    assert wrong_store.status_code == 403
    assert not_owner.status_code == 403


async def test_buyer_escalation_and_admin_refund_failure(client, factory):
    sub_order = await factory.sub_order()
    case = await open_case(client, sub_order.id)

    escalated = await client.post(f"/api/returns/{case['id']}/escalate", json={"notes": "卖家不理我"}, headers=BUYER)
    assert escalated.json()["status"] == "UnderAdminReview"
    again = await client.post(f"/api/returns/{case['id']}/escalate", json={}, headers=BUYER)
    assert again.status_code == 409

    app.dependency_overrides[get_refund_client] = lambda: FakeRefundClient(fail=True)
    decision = await client.post(
        f"/api/admin/returns/{case['id']}/decisions",
        json={"action_type": "EnforceRefund", "notes": "强制退款", "resolution_type": "FullRefund"},
        headers=ADMIN,
    )
    assert decision.status_code == 502

    actions = await client.get(f"/api/admin/returns/{case['id']}/actions", headers=ADMIN)
    assert [a["action_type"] for a in actions.json()] == ["Escalated"]


async def test_sla_endpoints(client, factory):
    created = await client.post(
        "/api/sla/configs",
        json={"category_id": 1, "request_type": "Return", "first_response_hours": 12, "resolution_hours": 72},
        headers=ADMIN,
    )
    assert created.status_code == 201
    assert created.json()["updated_by_user_id"] == ADMIN_ID

    invalid = await client.post(
        "/api/sla/configs", json={"first_response_hours": 12, "resolution_hours": 6}, headers=ADMIN
    )
    assert invalid.status_code == 422

    updated = await client.patch(f"/api/sla/configs/{created.json()['id']}", json={"resolution_hours": 96}, headers=ADMIN)
    assert updated.json()["resolution_hours"] == 96

    preview = await client.get(
        "/api/sla/deadlines",
        params={"category_id": 1, "request_type": "Return", "requested_at": "2024-01-01T00:00:00"},
        headers=ADMIN,
    )
    assert preview.json() == {
        "first_response_deadline": "2024-01-01T12:00:00",
        "resolution_deadline": "2024-01-05T00:00:00",
    }

    sub_order = await factory.sub_order()
    await open_case(client, sub_order.id)

    stats = await client.get("/api/sla/statistics", headers=ADMIN)
    assert stats.json()["total_cases"] == 1
    sellers = await client.get("/api/sla/statistics/sellers", headers=ADMIN)
    assert sellers.json()["items"][0]["store_id"] == sub_order.store_id

    sweep = await client.post("/api/sla/sweep", headers=ADMIN)
    assert sweep.json() == {"newly_breached": 0}
