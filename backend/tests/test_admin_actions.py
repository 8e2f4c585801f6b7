import pytest

from marketplace.models.refund import RefundStatus
from marketplace.models.return_request import AdminActionType, EscalationReason, ResolutionType, ReturnStatus
from marketplace.services.admin_actions import AdminActionService
from marketplace.services.result import ErrorKind
from marketplace.services.return_request_service import ReturnRequestService
from marketplace.services.sla_service import SLAService

from conftest import ADMIN_ID, BUYER_ID, SELLER_USER_ID, FakeRefundClient


@pytest.fixture
def returns(db, clock, refund_client, notifier):
    return ReturnRequestService(db, refund_client=refund_client, notifier=notifier, now=clock)


@pytest.fixture
def admin(db, clock, refund_client):
    return AdminActionService(db, refund_client=refund_client, now=clock)


@pytest.fixture
async def sub_order(factory):
    return await factory.sub_order()


@pytest.fixture
async def case(returns, sub_order):
    return await returns.create_return_request(sub_order.id, BUYER_ID, "Return", "Defective", None, True)


async def escalate(admin, case, reason=EscalationReason.BUYER_REQUESTED.value, notes=None):
    return await admin.escalate_return_case(case.id, reason, BUYER_ID, notes)


# =====================================================
# 升级
# =====================================================

async def test_escalate_sets_review_fields(admin, case, clock):
    result = await escalate(admin, case)

    assert result.ok
    rr = result.value
    assert rr.status == ReturnStatus.UNDER_ADMIN_REVIEW.value
    assert rr.escalation_reason == EscalationReason.BUYER_REQUESTED.value
    assert rr.escalated_at == clock()
    assert rr.escalated_by_user_id == BUYER_ID
    # 没填备注不写介入记录
    assert await admin.get_admin_actions(case.id) == []


@pytest.mark.parametrize(
    "reason, action_type",
    [
        (EscalationReason.SLA_BREACH.value, AdminActionType.ESCALATED_SLA_BREACH.value),
        (EscalationReason.ADMIN_MANUAL_FLAG.value, AdminActionType.MANUAL_FLAG.value),
        (EscalationReason.BUYER_REQUESTED.value, AdminActionType.ESCALATED.value),
    ],
)
async def test_escalation_notes_write_ledger(admin, case, reason, action_type):
    await escalate(admin, case, reason=reason, notes="卖家一直不回复")

    actions = await admin.get_admin_actions(case.id)
    assert [a.action_type for a in actions] == [action_type]
    assert actions[0].previous_status == ReturnStatus.REQUESTED.value
    assert actions[0].new_status == ReturnStatus.UNDER_ADMIN_REVIEW.value


async def test_cannot_escalate_twice(admin, case):
    await escalate(admin, case)

    result = await escalate(admin, case)

    assert result.kind == ErrorKind.INVALID_STATE


async def test_cannot_escalate_rejected_or_missing(admin, returns, case, sub_order):
    await returns.reject_return_request(case.id, sub_order.store_id, "不符合条件")

    assert (await escalate(admin, case)).kind == ErrorKind.INVALID_STATE
    assert (await admin.escalate_return_case(999, "BuyerRequested", BUYER_ID)).kind == ErrorKind.NOT_FOUND


async def test_escalate_requires_reason(admin, case):
    assert (await escalate(admin, case, reason="None")).kind == ErrorKind.VALIDATION


# =====================================================
# 裁决
# =====================================================

async def test_enforce_full_refund_on_review_case(admin, case, refund_client):
    await escalate(admin, case)

    result = await admin.record_admin_decision(
        case.id, ADMIN_ID, AdminActionType.ENFORCE_REFUND.value, "卖家未举证，强制退款",
        resolution_type=ResolutionType.FULL_REFUND.value,
    )

    assert result.ok
    rr = result.value.return_request
    assert rr.status == ReturnStatus.RESOLVED.value
    assert rr.resolution_type == ResolutionType.FULL_REFUND.value
    assert len(refund_client.calls) == 1
    assert refund_client.calls[0]["amount"] == case.refund_amount
    assert refund_client.calls[0]["initiated_by_user_id"] == ADMIN_ID

    actions = await admin.get_admin_actions(case.id)
    assert len(actions) == 1
    assert actions[0].previous_status == ReturnStatus.UNDER_ADMIN_REVIEW.value
    assert actions[0].new_status == ReturnStatus.RESOLVED.value
    assert actions[0].admin_user_id == ADMIN_ID


async def test_refund_failure_aborts_decision(db, clock, case):
    admin = AdminActionService(db, refund_client=FakeRefundClient(fail=True), now=clock)
    await escalate(admin, case)
    case_id = case.id

    result = await admin.record_admin_decision(
        case_id, ADMIN_ID, AdminActionType.OVERRIDE_SELLER_DECISION.value, "推翻卖家决定",
        resolution_type=ResolutionType.PARTIAL_REFUND.value, resolution_amount=20,
    )

    assert result.kind == ErrorKind.DEPENDENCY_FAILURE
    stored = await ReturnRequestService(db, now=clock).get_return_request(case_id)
    assert stored.status == ReturnStatus.UNDER_ADMIN_REVIEW.value
    assert stored.resolution_type == ResolutionType.NONE.value
    assert await admin.get_admin_actions(case_id) == []


async def test_decision_conflict_detected_before_refund(admin, case, clock, session_maker, refund_client, monkeypatch):
    await escalate(admin, case)
    case_id = case.id
    clock.advance(hours=200)
    lock_reason = admin.returns.resolution_lock_reason

    async def lock_reason_then_sweep(rr):
        reason = await lock_reason(rr)
        # 巡检在裁决读取之后、写入之前改写了售后单
        async with session_maker() as other:
            assert await SLAService(other, now=clock).check_and_update_sla_breaches(case_id)
        return reason

    monkeypatch.setattr(admin.returns, "resolution_lock_reason", lock_reason_then_sweep)

    result = await admin.record_admin_decision(
        case_id, ADMIN_ID, AdminActionType.ENFORCE_REFUND.value, "强制退款",
        resolution_type=ResolutionType.FULL_REFUND.value,
    )

    assert result.kind == ErrorKind.CONFLICT
    assert refund_client.calls == []
    assert await admin.returns.get_linked_refunds(case_id) == []
    assert await admin.get_admin_actions(case_id) == []


async def test_decision_keeps_refund_when_sweep_runs_during_refund(db, clock, case, session_maker):
    swept = []

    async def sweep_on_other_session():
        async with session_maker() as other:
            swept.append(await SLAService(other, now=clock).check_and_update_sla_breaches(case_id))

    admin = AdminActionService(db, refund_client=FakeRefundClient(during_call=sweep_on_other_session), now=clock)
    await escalate(admin, case)
    case_id = case.id
    clock.advance(hours=200)

    result = await admin.record_admin_decision(
        case_id, ADMIN_ID, AdminActionType.ENFORCE_REFUND.value, "强制退款",
        resolution_type=ResolutionType.FULL_REFUND.value,
    )

    assert len(swept) == 1
    assert result.ok
    refunds = await admin.returns.get_linked_refunds(case_id)
    assert [r.amount for r in refunds] == [case.refund_amount]
    assert [a.action_type for a in await admin.get_admin_actions(case_id)] == [AdminActionType.ENFORCE_REFUND.value]
    stored = await admin.returns.get_return_request(case_id)
    assert stored.status == ReturnStatus.RESOLVED.value


async def test_each_refund_on_a_case_has_its_own_idempotency_key(admin, returns, case, sub_order, refund_client):
    await returns.resolve_return_case(case.id, sub_order.store_id, "PartialRefund", "先退一部分", 10, SELLER_USER_ID)

    result = await admin.record_admin_decision(
        case.id, ADMIN_ID, AdminActionType.OVERRIDE_SELLER_DECISION.value, "改为全额退款",
        resolution_type=ResolutionType.FULL_REFUND.value,
    )

    assert result.ok
    assert [c["amount"] for c in refund_client.calls] == [10, case.refund_amount]
    refunds = await returns.get_linked_refunds(case.id)
    assert refund_client.idempotency_keys == [r.refund_number for r in refunds]
    assert len(set(refund_client.idempotency_keys)) == 2


async def test_decision_requires_notes(admin, case):
    empty = await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.ADDED_NOTES.value, " ")
    too_long = await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.ADDED_NOTES.value, "x" * 2001)

    assert empty.kind == ErrorKind.VALIDATION
    assert too_long.kind == ErrorKind.VALIDATION


async def test_close_without_action(admin, case, refund_client):
    result = await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.CLOSE_WITHOUT_ACTION.value, "证据不足")

    rr = result.value.return_request
    assert rr.status == ReturnStatus.RESOLVED.value
    assert rr.resolution_type == ResolutionType.NO_REFUND.value
    assert refund_client.calls == []


async def test_approved_seller_decision_keeps_resolution(admin, returns, case, sub_order, clock):
    resolved = await returns.resolve_return_case(case.id, sub_order.store_id, "NoRefund", "不退", None, SELLER_USER_ID)
    resolved_at = resolved.value.return_request.resolved_at
    clock.advance(hours=1)

    result = await admin.record_admin_decision(
        case.id, ADMIN_ID, AdminActionType.APPROVED_SELLER_DECISION.value, "维持卖家决定"
    )

    rr = result.value.return_request
    assert rr.status == ReturnStatus.RESOLVED.value
    assert rr.resolution_type == ResolutionType.NO_REFUND.value
    assert rr.resolved_at == resolved_at


async def test_admin_completes_no_refund_case(admin, returns, case, sub_order, clock):
    await returns.resolve_return_case(case.id, sub_order.store_id, "NoRefund", "不退", None, SELLER_USER_ID)

    result = await admin.record_admin_decision(
        case.id, ADMIN_ID, AdminActionType.OVERRIDE_SELLER_DECISION.value, "结案",
        new_status=ReturnStatus.COMPLETED.value,
    )

    assert result.value.return_request.status == ReturnStatus.COMPLETED.value
    assert result.value.return_request.completed_at == clock()


async def test_added_notes_does_not_change_status(admin, returns, case, sub_order):
    await returns.reject_return_request(case.id, sub_order.store_id, "不符合")

    # 已拒绝的单子仍然可以补充备注
    result = await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.ADDED_NOTES.value, "买家来电投诉")

    assert result.ok
    assert result.value.return_request.status == ReturnStatus.REJECTED.value
    actions = await admin.get_admin_actions(case.id)
    assert actions[0].previous_status == actions[0].new_status == ReturnStatus.REJECTED.value


async def test_decision_refused_once_locked(admin, returns, case, sub_order):
    await returns.reject_return_request(case.id, sub_order.store_id, "不符合")

    result = await admin.record_admin_decision(
        case.id, ADMIN_ID, AdminActionType.ENFORCE_REFUND.value, "强制退款",
        resolution_type=ResolutionType.FULL_REFUND.value,
    )

    assert result.kind == ErrorKind.INVALID_STATE


async def test_admin_ledger_is_oldest_first(admin, case, clock):
    await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.ADDED_NOTES.value, "第一条")
    clock.advance(minutes=5)
    await admin.record_admin_decision(case.id, ADMIN_ID, AdminActionType.ADDED_NOTES.value, "第二条")

    actions = await admin.get_admin_actions(case.id)

    assert [a.notes for a in actions] == ["第一条", "第二条"]


# =====================================================
# 退款重试
# =====================================================

async def test_retry_failed_refund(db, clock, notifier, case, sub_order):
    failing = FakeRefundClient(fail=True)
    returns = ReturnRequestService(db, refund_client=failing, notifier=notifier, now=clock)
    outcome = (await returns.resolve_return_case(case.id, sub_order.store_id, "FullRefund", "同意", None, SELLER_USER_ID)).value
    assert outcome.refund_error

    failing.fail = False
    admin = AdminActionService(db, refund_client=failing, now=clock)
    result = await admin.retry_failed_refund(case.id, ADMIN_ID, "退款服务已恢复")

    assert result.ok
    assert result.value.refund_error is None
    assert result.value.refund.status == RefundStatus.REQUESTED
    refunds = await returns.get_linked_refunds(case.id)
    assert [r.status for r in refunds] == [RefundStatus.FAILED, RefundStatus.REQUESTED]
    actions = await admin.get_admin_actions(case.id)
    assert actions[-1].action_type == AdminActionType.ADDED_NOTES.value

    # 最近一次已经不是失败记录
    assert (await admin.retry_failed_refund(case.id, ADMIN_ID, "再来一次")).kind == ErrorKind.INVALID_STATE


async def test_retry_requires_resolved_refund_case(admin, case):
    result = await admin.retry_failed_refund(case.id, ADMIN_ID, "重试")

    assert result.kind == ErrorKind.INVALID_STATE
