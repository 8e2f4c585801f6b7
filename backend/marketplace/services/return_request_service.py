"""
售后单服务

负责售后单的全部状态流转：
- 买家发起（资格校验、SLA 截止时间、退款金额、单号）
- 卖家同意 / 拒绝 / 处理（触发退款）
- 退款回执确认后完结
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from marketplace.config import get_settings
from marketplace.models.order import SellerSubOrder, Store
from marketplace.models.refund import RefundTransaction, RefundStatus
from marketplace.models.return_request import (
    ReturnRequest,
    ReturnRequestItem,
    ReturnRequestType,
    ReturnReason,
    ReturnStatus,
    ResolutionType,
    REFUND_RESOLUTIONS,
)
from marketplace.services.category_lookup import CategoryLookup
from marketplace.services.eligibility import EligibilityValidator, EligibilityResult
from marketplace.services.notification_client import NotificationCollaborator, LogNotifier
from marketplace.services.refund_client import RefundCollaborator, RefundError
from marketplace.services.result import (
    ErrorKind,
    Ok,
    Result,
    ReturnRequestError,
    conflict,
    invalid_state,
    not_found,
    unauthorized,
    validation_error,
)
from marketplace.services.sla_service import SLAService
from marketplace.utils.return_number import generate_return_number, generate_refund_number
from marketplace.utils.timeutil import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

# 退款已发出后，售后单置 Completed 遇到并发修改的重试次数
REFUND_SAVE_ATTEMPTS = 3


@dataclass
class CaseContext:
    """售后单及其子订单、店铺"""
    return_request: ReturnRequest
    sub_order: SellerSubOrder
    store: Store


@dataclass
class ResolutionOutcome:
    """处理结果；refund_error 非空表示已处理但退款未发起成功，需要人工跟进"""
    return_request: ReturnRequest
    refund: Optional[RefundTransaction] = None
    refund_error: Optional[str] = None


async def load_case(db: AsyncSession, return_request_id: int) -> Optional[CaseContext]:
    """读取售后单 + 子订单 + 店铺"""
    result = await db.execute(
        select(ReturnRequest, SellerSubOrder, Store)
        .join(SellerSubOrder, ReturnRequest.sub_order_id == SellerSubOrder.id)
        .join(Store, SellerSubOrder.store_id == Store.id)
        .where(ReturnRequest.id == return_request_id)
    )
    row = result.first()
    if not row:
        return None
    return CaseContext(*row)


async def commit_or_conflict(db: AsyncSession, return_request_id: int):
    """提交事务；并发修改同一售后单时返回 Conflict"""
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        logger.warning(f"Concurrent modification detected on return request {return_request_id}")
        return conflict()
    return None


def refund_amount_for(rr: ReturnRequest, resolution_type: str, resolution_amount: Optional[float]) -> float:
    """按处理结果计算应退金额：全额退 = 申请金额，部分退 = 指定金额"""
    if resolution_type == ResolutionType.FULL_REFUND.value:
        return rr.refund_amount
    if resolution_type == ResolutionType.PARTIAL_REFUND.value:
        return resolution_amount or 0
    return 0


class ReturnRequestService:
    """售后单服务"""

    # 卖家可以直接处理的状态（平台介入后由平台裁决）
    SELLER_RESOLVABLE_STATUSES = (ReturnStatus.REQUESTED.value, ReturnStatus.APPROVED.value)

    def __init__(
        self,
        db: AsyncSession,
        refund_client: Optional[RefundCollaborator] = None,
        notifier: Optional[NotificationCollaborator] = None,
        category_lookup: Optional[CategoryLookup] = None,
        return_window_days: Optional[int] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.refund_client = refund_client
        self.notifier = notifier or LogNotifier()
        self.category_lookup = category_lookup or CategoryLookup(db)
        self.return_window_days = return_window_days
        self._now = now or utcnow

    # =====================================================
    # 资格校验 / 发起
    # =====================================================

    async def validate_return_eligibility(self, sub_order_id: int, buyer_id: int) -> EligibilityResult:
        validator = EligibilityValidator(self.db, self.return_window_days, now=self._now)
        return await validator.validate(sub_order_id, buyer_id)

    async def create_return_request(
        self,
        sub_order_id: int,
        buyer_id: int,
        request_type: str,
        reason: str,
        description: Optional[str],
        is_full_return: bool,
        item_quantities: Optional[Dict[int, int]] = None,
    ) -> ReturnRequest:
        """
        买家发起售后

        Args:
            item_quantities: 部分退货时 {子订单商品行ID: 退货数量}

        Raises:
            ReturnRequestError: 不满足售后条件或参数非法（不会写入任何数据）
        """
        try:
            request_type = ReturnRequestType(request_type).value
            reason = ReturnReason(reason).value
        except ValueError as e:
            raise ReturnRequestError(f"参数非法: {e}") from e

        eligibility = await self.validate_return_eligibility(sub_order_id, buyer_id)
        if not eligibility.eligible:
            raise ReturnRequestError(eligibility.reason or "不满足售后条件", eligibility.error_kind or ErrorKind.INVALID_STATE)

        result = await self.db.execute(
            select(SellerSubOrder)
            .options(selectinload(SellerSubOrder.items))
            .where(SellerSubOrder.id == sub_order_id)
        )
        sub_order = result.scalar_one_or_none()
        if not sub_order:
            raise ReturnRequestError("子订单不存在", ErrorKind.NOT_FOUND)

        return_items: List[ReturnRequestItem] = []
        if is_full_return:
            # 整单退：退子订单全额（含运费）
            refund_amount = sub_order.total_amount
        else:
            if not item_quantities:
                raise ReturnRequestError("部分退货必须指定退货商品及数量")

            order_items = {item.id: item for item in sub_order.items}
            refund_amount = 0.0
            for item_id, quantity in item_quantities.items():
                order_item = order_items.get(item_id)
                if order_item is None:
                    raise ReturnRequestError(f"商品行 {item_id} 不属于该子订单")
                if quantity < 1 or quantity > order_item.quantity:
                    raise ReturnRequestError(
                        f"商品 {order_item.product_title} 的退货数量必须在 1 到 {order_item.quantity} 之间"
                    )
                item_amount = round(order_item.unit_price * quantity, 2)
                refund_amount += item_amount
                return_items.append(
                    ReturnRequestItem(sub_order_item_id=order_item.id, quantity=quantity, refund_amount=item_amount)
                )
            # 部分退货只退商品金额，不含运费
            refund_amount = round(refund_amount, 2)

        now = self._now()
        category_id = await self.category_lookup.resolve_category_id(sub_order_id)
        first_response_deadline, resolution_deadline = await SLAService(self.db, now=self._now).calculate_sla_deadlines(
            now, category_id, request_type
        )

        rr = ReturnRequest(
            return_number=generate_return_number(request_type, now),
            sub_order_id=sub_order_id,
            buyer_id=buyer_id,
            request_type=request_type,
            reason=reason,
            description=description,
            status=ReturnStatus.REQUESTED.value,
            is_full_return=is_full_return,
            refund_amount=refund_amount,
            resolution_type=ResolutionType.NONE.value,
            first_response_deadline=first_response_deadline,
            resolution_deadline=resolution_deadline,
            requested_at=now,
            updated_at=now,
            items=return_items,
        )
        self.db.add(rr)
        try:
            await self.db.commit()
        except IntegrityError as e:
            # 并发发起：唯一索引保证同一子订单只有一个未被拒绝的售后单
            await self.db.rollback()
            raise ReturnRequestError("该子订单已有售后申请", ErrorKind.INVALID_STATE) from e

        logger.info(
            f"Return request {rr.return_number} created for sub-order {sub_order_id} by buyer {buyer_id}"
        )

        try:
            await self.notifier.notify_return_opened(sub_order.store_id, rr)
        except Exception as e:
            logger.warning(f"Failed to notify store {sub_order.store_id} about {rr.return_number}: {e}")

        return rr

    # =====================================================
    # 卖家同意 / 拒绝
    # =====================================================

    async def approve_return_request(
        self, return_request_id: int, store_id: int, notes: Optional[str] = None
    ) -> Result[ReturnRequest]:
        return await self._seller_decision(return_request_id, store_id, ReturnStatus.APPROVED, notes)

    async def reject_return_request(
        self, return_request_id: int, store_id: int, notes: str
    ) -> Result[ReturnRequest]:
        if not notes or not notes.strip():
            return validation_error("拒绝售后必须填写原因")
        return await self._seller_decision(return_request_id, store_id, ReturnStatus.REJECTED, notes)

    async def _seller_decision(
        self, return_request_id: int, store_id: int, new_status: ReturnStatus, notes: Optional[str]
    ) -> Result[ReturnRequest]:
        if notes and len(notes) > settings.seller_notes_max_length:
            return validation_error(f"备注不能超过 {settings.seller_notes_max_length} 字")

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        rr = ctx.return_request
        if ctx.sub_order.store_id != store_id:
            return unauthorized("无权处理该售后单")
        if rr.status != ReturnStatus.REQUESTED.value:
            return invalid_state(f"当前状态 {rr.status} 不能{'同意' if new_status == ReturnStatus.APPROVED else '拒绝'}")

        now = self._now()
        rr.status = new_status.value
        if notes:
            rr.seller_notes = notes.strip()
        if new_status == ReturnStatus.APPROVED:
            rr.approved_at = now
        else:
            rr.rejected_at = now
        if rr.seller_first_response_at is None:
            rr.seller_first_response_at = now
        rr.updated_at = now

        error = await commit_or_conflict(self.db, return_request_id)
        if error:
            return error

        logger.info(f"Return request {rr.return_number} {new_status.value.lower()} by store {store_id}")
        return Ok(rr)

    # =====================================================
    # 处理 / 退款
    # =====================================================

    async def get_linked_refunds(self, return_request_id: int) -> List[RefundTransaction]:
        result = await self.db.execute(
            select(RefundTransaction)
            .where(RefundTransaction.return_request_id == return_request_id)
            .order_by(RefundTransaction.id.asc())
        )
        return list(result.scalars().all())

    async def resolution_lock_reason(self, rr: ReturnRequest) -> Optional[str]:
        """返回处理结果不可再修改的原因；可修改时返回 None"""
        if rr.status == ReturnStatus.COMPLETED.value:
            return "售后单已完结，不能修改处理结果"
        if rr.status == ReturnStatus.REJECTED.value:
            return "售后单已被拒绝，不能修改处理结果"
        result = await self.db.execute(
            select(func.count(RefundTransaction.id)).where(
                and_(
                    RefundTransaction.return_request_id == rr.id,
                    RefundTransaction.status == RefundStatus.COMPLETED,
                )
            )
        )
        if (result.scalar() or 0) > 0:
            return "退款已完成，不能修改处理结果"
        return None

    async def can_change_resolution(self, return_request_id: int) -> bool:
        result = await self.db.execute(select(ReturnRequest).where(ReturnRequest.id == return_request_id))
        rr = result.scalar_one_or_none()
        if not rr:
            return False
        return await self.resolution_lock_reason(rr) is None

    async def resolve_return_case(
        self,
        return_request_id: int,
        store_id: int,
        resolution_type: str,
        notes: Optional[str],
        amount: Optional[float],
        initiated_by_user_id: int,
    ) -> Result[ResolutionOutcome]:
        """
        卖家处理售后单

        处理结果先落库（状态置为 Resolved），之后再调用退款服务；
        退款失败不回滚处理结果，而是记录一条失败的退款记录并在返回值里带上 refund_error。
        """
        try:
            resolution_type = ResolutionType(resolution_type).value
        except ValueError:
            return validation_error(f"未知的处理结果: {resolution_type}")
        if resolution_type == ResolutionType.NONE.value:
            return validation_error("处理结果不能为空")
        if notes and len(notes) > settings.resolution_notes_max_length:
            return validation_error(f"处理说明不能超过 {settings.resolution_notes_max_length} 字")

        ctx = await load_case(self.db, return_request_id)
        if not ctx:
            return not_found()
        rr = ctx.return_request
        if ctx.sub_order.store_id != store_id:
            return unauthorized("无权处理该售后单")

        lock_reason = await self.resolution_lock_reason(rr)
        if lock_reason:
            return invalid_state(lock_reason)
        if rr.status not in self.SELLER_RESOLVABLE_STATUSES:
            return invalid_state(f"当前状态 {rr.status} 不能由卖家处理")

        if resolution_type == ResolutionType.PARTIAL_REFUND.value:
            if amount is None or amount <= 0 or amount > rr.refund_amount:
                return validation_error(f"部分退款金额必须大于 0 且不超过 {rr.refund_amount:.2f}")

        now = self._now()
        rr.resolution_type = resolution_type
        rr.resolution_notes = notes
        rr.resolution_amount = (
            round(amount, 2) if resolution_type == ResolutionType.PARTIAL_REFUND.value
            else refund_amount_for(rr, resolution_type, None)
        )
        rr.resolved_at = now
        rr.status = ReturnStatus.RESOLVED.value
        rr.updated_at = now

        error = await commit_or_conflict(self.db, return_request_id)
        if error:
            return error
        logger.info(f"Return request {rr.return_number} resolved by store {store_id}: {resolution_type}")

        outcome = ResolutionOutcome(return_request=rr)
        if resolution_type in REFUND_RESOLUTIONS:
            refund, refund_error = await self.dispatch_refund(
                ctx, rr.resolution_amount, initiated_by_user_id, notes
            )
            outcome.return_request = await self.save_refund(rr, refund)
            outcome.refund = refund
            outcome.refund_error = refund_error
            if refund_error:
                logger.error(
                    f"Return request {rr.return_number} resolved but refund failed, manual follow-up required: "
                    f"{refund_error}"
                )
        return Ok(outcome)

    def new_refund(
        self,
        ctx: CaseContext,
        amount: float,
        initiated_by_user_id: int,
        notes: Optional[str],
    ) -> RefundTransaction:
        """生成退款记录（不加入会话）；退款单号同时作为退款服务的幂等键"""
        rr = ctx.return_request
        now = self._now()
        return RefundTransaction(
            refund_number=generate_refund_number(now),
            return_request_id=rr.id,
            order_id=ctx.sub_order.order_id,
            sub_order_id=ctx.sub_order.id,
            amount=amount,
            status=RefundStatus.REQUESTED,
            reason=f"售后单 {rr.return_number} 退款",
            notes=notes,
            initiated_by_user_id=initiated_by_user_id,
            requested_at=now,
            updated_at=now,
        )

    async def _send_refund(self, ctx: CaseContext, refund: RefundTransaction):
        """调用退款服务并把回执写回退款记录，期间不访问数据库"""
        if self.refund_client is None:
            raise RefundError("未配置退款服务")

        receipt = await self.refund_client.process_partial_refund(
            order_id=refund.order_id,
            sub_order_id=refund.sub_order_id,
            amount=refund.amount,
            reason=refund.reason,
            initiated_by_user_id=refund.initiated_by_user_id,
            notes=refund.notes,
            return_request_id=ctx.return_request.id,
            idempotency_key=refund.refund_number,
        )
        now = self._now()
        refund.status = receipt.status
        refund.provider_refund_id = receipt.provider_refund_id
        refund.updated_at = now
        if receipt.status == RefundStatus.COMPLETED:
            refund.completed_at = now

    async def invoke_refund(
        self,
        ctx: CaseContext,
        amount: float,
        initiated_by_user_id: int,
        notes: Optional[str],
    ) -> RefundTransaction:
        """
        调用退款服务，返回带回执状态的退款记录（不加入会话）

        Raises:
            RefundError: 退款服务调用失败
        """
        refund = self.new_refund(ctx, amount, initiated_by_user_id, notes)
        await self._send_refund(ctx, refund)
        return refund

    async def dispatch_refund(
        self,
        ctx: CaseContext,
        amount: float,
        initiated_by_user_id: int,
        notes: Optional[str],
    ) -> Tuple[RefundTransaction, Optional[str]]:
        """调用退款服务；失败时返回 Failed 的退款记录和失败原因（不加入会话）"""
        refund = self.new_refund(ctx, amount, initiated_by_user_id, notes)
        try:
            await self._send_refund(ctx, refund)
        except RefundError as e:
            refund.status = RefundStatus.FAILED
            refund.error_message = str(e)[:1000]
            refund.updated_at = self._now()
            return refund, str(e)
        return refund, None

    async def save_refund(
        self,
        rr: ReturnRequest,
        refund: RefundTransaction,
        extra: Sequence[object] = (),
    ) -> ReturnRequest:
        """
        退款调用之后落库

        退款已经发出，记录不能因为售后单被并发修改而丢失：
        退款记录（及附带的介入记录）不涉及版本号，先单独提交；
        回执为 Completed 时再把售后单置为 Completed，冲突则重新读取后重试。

        Returns:
            最新的售后单
        """
        return_request_id = rr.id
        self.db.add(refund)
        self.db.add_all(list(extra))
        await self.db.commit()
        if refund.status != RefundStatus.COMPLETED:
            return rr

        completed_at = refund.completed_at
        for attempt in range(1, REFUND_SAVE_ATTEMPTS + 1):
            self.complete_case(rr, completed_at)
            try:
                await self.db.commit()
                return rr
            except StaleDataError:
                await self.db.rollback()
                logger.warning(
                    f"Return request {return_request_id} changed while recording refund "
                    f"{refund.refund_number}, reloading (attempt {attempt})"
                )
                await self.db.refresh(refund)
                ctx = await load_case(self.db, return_request_id)
                rr = ctx.return_request

        logger.error(
            f"Refund {refund.refund_number} completed but return request {return_request_id} "
            f"could not be completed, confirm the refund again to retry"
        )
        return rr

    def complete_case(self, rr: ReturnRequest, now: datetime):
        """Resolved -> Completed（退款到账）；其他状态不变"""
        if rr.status == ReturnStatus.RESOLVED.value:
            rr.status = ReturnStatus.COMPLETED.value
            rr.completed_at = now
            rr.updated_at = now
            logger.info(f"Return request {rr.return_number} completed")

    async def confirm_refund(
        self,
        refund_id: int,
        status: str,
        provider_refund_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Result[RefundTransaction]:
        """
        退款服务回执：更新退款状态；退款完成时售后单 Resolved -> Completed
        """
        if status not in RefundStatus.ALL:
            return validation_error(f"未知的退款状态: {status}")

        result = await self.db.execute(select(RefundTransaction).where(RefundTransaction.id == refund_id))
        refund = result.scalar_one_or_none()
        if not refund:
            return not_found("退款记录不存在")
        if refund.status == RefundStatus.COMPLETED:
            if status == RefundStatus.COMPLETED:
                return Ok(refund)
            return invalid_state("退款已完成，不能变更状态")

        now = self._now()
        refund.status = status
        refund.updated_at = now
        if provider_refund_id:
            refund.provider_refund_id = provider_refund_id
        if status == RefundStatus.FAILED:
            refund.error_message = (error_message or "退款失败")[:1000]
        if status == RefundStatus.COMPLETED:
            refund.completed_at = now

        if refund.return_request_id is not None:
            ctx = await load_case(self.db, refund.return_request_id)
            if ctx and status == RefundStatus.COMPLETED:
                self.complete_case(ctx.return_request, now)
            error = await commit_or_conflict(self.db, refund.return_request_id)
            if error:
                return error
        else:
            await self.db.commit()

        if status == RefundStatus.FAILED:
            logger.error(f"Refund {refund.refund_number} failed, manual follow-up required: {refund.error_message}")
        return Ok(refund)

    # =====================================================
    # 查询
    # =====================================================

    async def get_return_request(self, return_request_id: int) -> Optional[ReturnRequest]:
        result = await self.db.execute(select(ReturnRequest).where(ReturnRequest.id == return_request_id))
        return result.scalar_one_or_none()

    async def get_return_request_by_number(self, return_number: str) -> Optional[ReturnRequest]:
        result = await self.db.execute(select(ReturnRequest).where(ReturnRequest.return_number == return_number))
        return result.scalar_one_or_none()

    async def get_return_requests_by_buyer(self, buyer_id: int) -> List[ReturnRequest]:
        result = await self.db.execute(
            select(ReturnRequest)
            .where(ReturnRequest.buyer_id == buyer_id)
            .order_by(ReturnRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def get_return_requests_by_sub_order(self, sub_order_id: int) -> List[ReturnRequest]:
        result = await self.db.execute(
            select(ReturnRequest)
            .where(ReturnRequest.sub_order_id == sub_order_id)
            .order_by(ReturnRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def get_return_requests_by_store(self, store_id: int) -> List[ReturnRequest]:
        result = await self.db.execute(
            select(ReturnRequest)
            .join(SellerSubOrder, ReturnRequest.sub_order_id == SellerSubOrder.id)
            .where(SellerSubOrder.store_id == store_id)
            .order_by(ReturnRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def search_return_requests(
        self,
        status: Optional[str] = None,
        request_type: Optional[str] = None,
        store_id: Optional[int] = None,
        escalated_only: bool = False,
        breached_only: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[int, List[ReturnRequest]]:
        """平台后台售后单列表（筛选 + 分页）"""
        conditions = []
        if status:
            conditions.append(ReturnRequest.status == getattr(status, "value", status))
        if request_type:
            conditions.append(ReturnRequest.request_type == getattr(request_type, "value", request_type))
        if store_id is not None:
            conditions.append(SellerSubOrder.store_id == store_id)
        if escalated_only:
            conditions.append(ReturnRequest.escalated_at.isnot(None))
        if breached_only:
            conditions.append(
                (ReturnRequest.first_response_sla_breached == True)  # noqa: E712
                | (ReturnRequest.resolution_sla_breached == True)  # noqa: E712
            )
        if search:
            conditions.append(ReturnRequest.return_number.ilike(f"%{search.strip()}%"))

        stmt = select(ReturnRequest).join(SellerSubOrder, ReturnRequest.sub_order_id == SellerSubOrder.id)
        count_stmt = (
            select(func.count(ReturnRequest.id))
            .select_from(ReturnRequest)
            .join(SellerSubOrder, ReturnRequest.sub_order_id == SellerSubOrder.id)
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))

        offset = (page - 1) * page_size
        result = await self.db.execute(
            stmt.order_by(ReturnRequest.requested_at.desc()).offset(offset).limit(page_size)
        )
        total_result = await self.db.execute(count_stmt)
        return total_result.scalar() or 0, list(result.scalars().all())
