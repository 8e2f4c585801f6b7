"""
平台介入

- 升级到平台审核（买家申请 / SLA 超时 / 管理员手动标记）
- 平台裁决，每次裁决都写一条介入记录
- 退款失败后的人工重试
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from marketplace.config import get_settings
from marketplace.models.refund import RefundTransaction, RefundStatus
from marketplace.models.return_request import (
    ReturnRequest,
    ReturnRequestAdminAction,
    ReturnStatus,
    ResolutionType,
    EscalationReason,
    AdminActionType,
    REFUND_RESOLUTIONS,
)
from marketplace.services.refund_client import RefundCollaborator, RefundError
from marketplace.services.result import (
    Err,
    ErrorKind,
    Ok,
    Result,
    conflict,
    invalid_state,
    not_found,
    validation_error,
)
from marketplace.services.return_request_service import (
    ReturnRequestService,
    ResolutionOutcome,
    commit_or_conflict,
    load_case,
    refund_amount_for,
)
from marketplace.utils.timeutil import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

# 升级原因 -> 介入记录动作类型
ESCALATION_ACTIONS = {
    EscalationReason.SLA_BREACH.value: AdminActionType.ESCALATED_SLA_BREACH.value,
    EscalationReason.ADMIN_MANUAL_FLAG.value: AdminActionType.MANUAL_FLAG.value,
}

# 不能再升级的状态
NON_ESCALATABLE_STATUSES = (
    ReturnStatus.UNDER_ADMIN_REVIEW.value,
    ReturnStatus.COMPLETED.value,
    ReturnStatus.REJECTED.value,
)


class AdminActionService:
    """平台介入服务"""

    def __init__(
        self,
        db: AsyncSession,
        refund_client: Optional[RefundCollaborator] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.refund_client = refund_client
        self._now = now or utcnow
        self.returns = ReturnRequestService(db, refund_client=refund_client, now=self._now)

    def _check_notes(self, notes: Optional[str], required: bool) -> Optional[Err]:
        if required and (not notes or not notes.strip()):
            return validation_error("平台操作必须填写备注")
        if notes and len(notes) > settings.admin_notes_max_length:
            return validation_error(f"备注不能超过 {settings.admin_notes_max_length} 字")
        return None

    # =====================================================
    # 升级
    # =====================================================

    async def escalate_return_case(
        self,
        return_request_id: int,
        reason: str,
        escalated_by_user_id: int,
        admin_notes: Optional[str] = None,
    ) -> Result[ReturnRequest]:
        """升级到平台审核；填写了备注时同时写一条介入记录"""
        try:
            reason = EscalationReason(reason).value
        except ValueError:
            return validation_error(f"未知的升级原因: {reason}")
        if reason == EscalationReason.NONE.value:
            return validation_error("升级原因不能为空")
        error = self._check_notes(admin_notes, required=False)
        if error:
            return error

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        rr = ctx.return_request
        if rr.status in NON_ESCALATABLE_STATUSES:
            return invalid_state(f"当前状态 {rr.status} 不能升级到平台")

        now = self._now()
        previous_status = rr.status
        rr.status = ReturnStatus.UNDER_ADMIN_REVIEW.value
        rr.escalation_reason = reason
        rr.escalated_at = now
        rr.escalated_by_user_id = escalated_by_user_id
        rr.updated_at = now

        if admin_notes and admin_notes.strip():
            self.db.add(
                ReturnRequestAdminAction(
                    return_request_id=rr.id,
                    admin_user_id=escalated_by_user_id,
                    action_type=ESCALATION_ACTIONS.get(reason, AdminActionType.ESCALATED.value),
                    previous_status=previous_status,
                    new_status=rr.status,
                    notes=admin_notes.strip(),
                    action_taken_at=now,
                )
            )

        error = await commit_or_conflict(self.db, return_request_id)
        if error:
            return error

        logger.info(f"Return request {rr.return_number} escalated ({reason}) by user {escalated_by_user_id}")
        return Ok(rr)

    # =====================================================
    # 裁决
    # =====================================================

    async def record_admin_decision(
        self,
        return_request_id: int,
        admin_user_id: int,
        action_type: str,
        notes: str,
        new_status: Optional[str] = None,
        resolution_type: Optional[str] = None,
        resolution_amount: Optional[float] = None,
    ) -> Result[ResolutionOutcome]:
        """
        记录平台裁决

        强制退款 / 推翻卖家决定时如需退款，退款失败则整个裁决不落库（DependencyFailure）。
        """
        error = self._check_notes(notes, required=True)
        if error:
            return error
        try:
            action_type = AdminActionType(action_type).value
            new_status = ReturnStatus(new_status).value if new_status else None
            resolution_type = ResolutionType(resolution_type).value if resolution_type else None
        except ValueError as e:
            return validation_error(f"参数非法: {e}")
        notes = notes.strip()

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        rr = ctx.return_request

        if action_type != AdminActionType.ADDED_NOTES.value:
            lock_reason = await self.returns.resolution_lock_reason(rr)
            if lock_reason:
                return invalid_state(lock_reason)

        if resolution_type == ResolutionType.PARTIAL_REFUND.value:
            if resolution_amount is None or resolution_amount <= 0 or resolution_amount > rr.refund_amount:
                return validation_error(f"部分退款金额必须大于 0 且不超过 {rr.refund_amount:.2f}")

        now = self._now()
        # 先记录操作前状态，再修改售后单
        action = ReturnRequestAdminAction(
            return_request_id=rr.id,
            admin_user_id=admin_user_id,
            action_type=action_type,
            previous_status=rr.status,
            notes=notes,
            resolution_type=resolution_type,
            resolution_amount=resolution_amount,
            action_taken_at=now,
        )

        refund_amount = 0.0
        if action_type in (AdminActionType.OVERRIDE_SELLER_DECISION.value, AdminActionType.ENFORCE_REFUND.value):
            if resolution_type and resolution_type != ResolutionType.NONE.value:
                rr.resolution_type = resolution_type
                rr.resolution_notes = notes
                rr.resolution_amount = refund_amount_for(rr, resolution_type, resolution_amount)
                rr.resolved_at = now
                rr.status = ReturnStatus.RESOLVED.value
                if resolution_type in REFUND_RESOLUTIONS:
                    refund_amount = rr.resolution_amount
            elif new_status:
                self._apply_status(rr, new_status, now)
        elif action_type == AdminActionType.CLOSE_WITHOUT_ACTION.value:
            rr.status = ReturnStatus.RESOLVED.value
            rr.resolution_type = ResolutionType.NO_REFUND.value
            rr.resolution_amount = 0
            rr.resolution_notes = notes
            rr.resolved_at = now
        elif action_type == AdminActionType.APPROVED_SELLER_DECISION.value:
            rr.status = ReturnStatus.RESOLVED.value
            if rr.resolved_at is None:
                rr.resolved_at = now
        elif action_type != AdminActionType.ADDED_NOTES.value and new_status:
            self._apply_status(rr, new_status, now)

        if action_type != AdminActionType.ADDED_NOTES.value:
            rr.updated_at = now
        action.new_status = rr.status
        self.db.add(action)

        outcome = ResolutionOutcome(return_request=rr)
        if refund_amount > 0:
            # 先写入裁决（校验版本号并锁住该行），再调用退款服务
            try:
                await self.db.flush()
            except StaleDataError:
                await self.db.rollback()
                logger.warning(f"Concurrent modification detected on return request {return_request_id}")
                return conflict()

            try:
                refund = await self.returns.invoke_refund(ctx, refund_amount, admin_user_id, notes)
            except RefundError as e:
                await self.db.rollback()
                logger.error(f"Admin decision on return request {return_request_id} aborted, refund failed: {e}")
                return Err(ErrorKind.DEPENDENCY_FAILURE, f"退款失败，裁决未生效: {e}")

            self.db.add(refund)
            if refund.status == RefundStatus.COMPLETED:
                self.returns.complete_case(rr, now)
                action.new_status = rr.status
            outcome.refund = refund

        error = await commit_or_conflict(self.db, return_request_id)
        if error:
            if outcome.refund is not None:
                # 退款已经发出：裁决作废，但退款记录必须留下
                self.db.add(outcome.refund)
                await self.db.commit()
                logger.error(
                    f"Admin decision on return request {return_request_id} lost a concurrent update after "
                    f"refund {outcome.refund.refund_number} was sent, refund recorded without the decision"
                )
            return error

        logger.info(
            f"Admin decision {action_type} recorded on return request {rr.return_number} "
            f"by admin {admin_user_id}: {action.previous_status} -> {action.new_status}"
        )
        return Ok(outcome)

    @staticmethod
    def _apply_status(rr: ReturnRequest, new_status: str, now: datetime):
        rr.status = new_status
        if new_status == ReturnStatus.RESOLVED.value and rr.resolved_at is None:
            rr.resolved_at = now
        elif new_status == ReturnStatus.COMPLETED.value and rr.completed_at is None:
            rr.completed_at = now
        elif new_status == ReturnStatus.APPROVED.value and rr.approved_at is None:
            rr.approved_at = now
        elif new_status == ReturnStatus.REJECTED.value and rr.rejected_at is None:
            rr.rejected_at = now

    async def get_admin_actions(self, return_request_id: int) -> List[ReturnRequestAdminAction]:
        result = await self.db.execute(
            select(ReturnRequestAdminAction)
            .where(ReturnRequestAdminAction.return_request_id == return_request_id)
            .order_by(ReturnRequestAdminAction.action_taken_at.asc(), ReturnRequestAdminAction.id.asc())
        )
        return list(result.scalars().all())

    # =====================================================
    # 退款重试
    # =====================================================

    async def retry_failed_refund(
        self, return_request_id: int, admin_user_id: int, notes: str
    ) -> Result[ResolutionOutcome]:
        """对已处理但最近一次退款失败的售后单重新发起退款（只能人工触发）"""
        error = self._check_notes(notes, required=True)
        if error:
            return error
        notes = notes.strip()

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        rr = ctx.return_request
        if rr.status != ReturnStatus.RESOLVED.value or rr.resolution_type not in REFUND_RESOLUTIONS:
            return invalid_state("只有已处理且需要退款的售后单可以重试退款")

        result = await self.db.execute(
            select(RefundTransaction)
            .where(RefundTransaction.return_request_id == return_request_id)
            .order_by(RefundTransaction.id.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if not latest or latest.status != RefundStatus.FAILED:
            return invalid_state("没有需要重试的失败退款")

        refund, refund_error = await self.returns.dispatch_refund(ctx, latest.amount, admin_user_id, notes)
        outcome_note = f"退款重试失败: {refund_error}" if refund_error else f"退款重试已发起: {refund.refund_number}"
        return_number = rr.return_number
        note = ReturnRequestAdminAction(
            return_request_id=rr.id,
            admin_user_id=admin_user_id,
            action_type=AdminActionType.ADDED_NOTES.value,
            previous_status=ReturnStatus.RESOLVED.value,
            new_status=(
                ReturnStatus.COMPLETED.value if refund.status == RefundStatus.COMPLETED else rr.status
            ),
            notes=f"{notes}\n{outcome_note}"[: settings.admin_notes_max_length],
            resolution_type=rr.resolution_type,
            resolution_amount=latest.amount,
            action_taken_at=self._now(),
        )
        rr = await self.returns.save_refund(rr, refund, [note])

        if refund_error:
            logger.error(f"Refund retry for return request {return_number} failed: {refund_error}")
        else:
            logger.info(f"Refund retry for return request {return_number} dispatched as {refund.refund_number}")
        return Ok(ResolutionOutcome(return_request=rr, refund=refund, refund_error=refund_error))
