"""
折扣应用协调服务
串联 资格判断 -> 金额计算 -> 叠加选择 -> 系统约束 -> 台账提交

状态流转：REQUESTED -> EVALUATED -> VALIDATED -> COMMITTED，任一阶段失败进入 REJECTED。
所有拒绝都以纯数据返回，不向调用方抛出业务异常。
AsyncSession 不能并发使用，每个阶段都开启独立的短会话。
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from promotion_engine.core.config import settings
from promotion_engine.core.exceptions import (
    CampaignNotFoundError,
    ConcurrentWriteConflictError,
    UsageLimitExceededError
)
from promotion_engine.models.campaign import Campaign, CampaignSummary
from promotion_engine.models.order_context import OrderContext
from promotion_engine.models.usage import UsageRecord, UsageRecordCreate
from promotion_engine.models.discount_result import (
    ApplicationResult,
    ApplicationState,
    AppliedCampaign,
    AutomaticDiscountPlan,
    CodeValidation,
    DiscountPreview,
    PricedCampaign,
    Rejection,
    RejectionKind
)
from promotion_engine.repositories.campaign_repository import CampaignRepository
from promotion_engine.repositories.usage_ledger import UsageLedger
from promotion_engine.services.eligibility_evaluator import EligibilityEvaluator
from promotion_engine.services.discount_calculator import DiscountCalculator, round_money
from promotion_engine.services.stacking_resolver import StackingResolver, stacking_sort_key
from promotion_engine.services.constraint_validator import ConstraintValidator
from promotion_engine.services.settings_service import SystemSettingsService

logger = structlog.get_logger()

ZERO = Decimal("0")


class DiscountApplicationService:
    """折扣应用协调服务"""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        settings_service: SystemSettingsService,
        clock: Callable[[], datetime] = datetime.now,
        max_commit_retries: Optional[int] = None,
        evaluator: Optional[EligibilityEvaluator] = None,
        calculator: Optional[DiscountCalculator] = None,
        resolver: Optional[StackingResolver] = None,
        validator: Optional[ConstraintValidator] = None
    ):
        self.session_maker = session_maker
        self.settings_service = settings_service
        self.clock = clock
        self.max_commit_retries = (
            settings.discount_commit_max_retries if max_commit_retries is None else max_commit_retries
        )
        self.evaluator = evaluator or EligibilityEvaluator()
        self.calculator = calculator or DiscountCalculator()
        self.resolver = resolver or StackingResolver()
        self.validator = validator or ConstraintValidator()

    def _now(self, order_context: OrderContext) -> datetime:
        return order_context.timestamp or self.clock()

    # ------------------------------------------------------------------
    # 查询类操作
    # ------------------------------------------------------------------

    async def list_eligible(
        self,
        user_id: str,
        order_total: Decimal,
        market_id: Optional[str] = None,
        product_ids: Optional[List[str]] = None,
        categories: Optional[List[str]] = None,
        **context_fields: Any
    ) -> List[CampaignSummary]:
        """
        列出用户当前可用的活动

        预估金额为活动自身的计算结果，不含系统级约束的削减。
        其余订单上下文字段（user_type、is_first_order、items 等）通过关键字参数传入。
        """
        order_context = OrderContext(
            user_id=user_id,
            order_total=order_total,
            market_id=market_id,
            product_ids=product_ids or [],
            categories=categories or [],
            **context_fields
        )
        now = self._now(order_context)

        async with self.session_maker() as session:
            candidates = await CampaignRepository(session).find_active_candidates(current_time=now)
            usage_counts = await UsageLedger(session).counts_for_user(user_id, [c.id for c in candidates])

        priced = []
        for campaign in candidates:
            candidate, _ = self._price(campaign, order_context, now, usage_counts.get(campaign.id, 0))
            if candidate is not None:
                priced.append(candidate)

        priced.sort(key=stacking_sort_key)
        return [
            CampaignSummary.from_campaign(p.campaign, estimated_discount=p.amount, free_shipping=p.free_shipping)
            for p in priced
        ]

    async def preview_discount(self, campaign_id: str, order_context: OrderContext) -> DiscountPreview:
        """预览单个活动的折扣效果，不产生任何写入"""
        now = self._now(order_context)
        campaign, user_usage = await self._load_for_evaluation(order_context.user_id, campaign_id=campaign_id)
        if campaign is None:
            return DiscountPreview(
                campaign_id=campaign_id,
                eligible=False,
                final_total=order_context.order_total,
                rejection=Rejection(kind=RejectionKind.NOT_FOUND, message="折扣活动不存在")
            )

        priced, rejection = self._price(campaign, order_context, now, user_usage)
        if rejection is not None:
            return DiscountPreview(
                campaign_id=campaign_id,
                eligible=False,
                final_total=order_context.order_total,
                rejection=rejection
            )

        constraints = await self.settings_service.get_discount_constraints()
        checked = self.validator.validate(order_context.order_total, priced.amount, constraints)
        if not checked.accepted:
            return DiscountPreview(
                campaign_id=campaign_id,
                eligible=False,
                final_total=order_context.order_total,
                rejection=checked.rejection
            )

        total = order_context.order_total
        effective = round_money(checked.amount / total * 100, "0.01") if total > 0 else ZERO
        return DiscountPreview(
            campaign_id=campaign_id,
            eligible=True,
            amount=checked.amount,
            final_total=round_money(total - checked.amount, "0.01"),
            effective_percentage=effective,
            free_shipping=priced.free_shipping,
            warnings=checked.warnings
        )

    async def validate_code(self, code: str, order_context: OrderContext) -> CodeValidation:
        """验证优惠码是否可用并返回折扣金额"""
        now = self._now(order_context)
        campaign, user_usage = await self._load_for_evaluation(order_context.user_id, code=code)
        if campaign is None:
            return CodeValidation(
                valid=False,
                rejection=Rejection(kind=RejectionKind.NOT_FOUND, message="优惠码不存在")
            )

        priced, rejection = self._price(campaign, order_context, now, user_usage)
        if rejection is not None:
            return CodeValidation(valid=False, campaign=campaign, rejection=rejection)

        constraints = await self.settings_service.get_discount_constraints()
        checked = self.validator.validate(order_context.order_total, priced.amount, constraints)
        if not checked.accepted:
            return CodeValidation(valid=False, campaign=campaign, rejection=checked.rejection)

        return CodeValidation(
            valid=True,
            campaign=campaign,
            amount=checked.amount,
            free_shipping=priced.free_shipping,
            warnings=checked.warnings
        )

    async def resolve_automatic_discounts(self, order_context: OrderContext) -> AutomaticDiscountPlan:
        """计算自动应用活动的叠加方案，不产生任何写入"""
        now = self._now(order_context)
        plan, _ = await self._plan_automatic(order_context, now)
        return plan

    # ------------------------------------------------------------------
    # 提交类操作
    # ------------------------------------------------------------------

    async def apply_discount(
        self,
        campaign_id: str,
        order_context: OrderContext,
        order_id: Optional[str] = None,
        shopping_list_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ApplicationResult:
        """
        应用指定活动的折扣并记录使用

        Args:
            campaign_id: 活动ID
            order_context: 订单上下文
            order_id: 关联订单ID
            shopping_list_id: 关联购物清单ID
            idempotency_key: 幂等键，同一个键重复调用返回已提交的结果
            metadata: 写入使用记录的附加信息

        Returns:
            应用结果，失败时 rejection 给出原因
        """
        if idempotency_key:
            replay = await self._find_replay(idempotency_key, order_context, [campaign_id])
            if replay is not None:
                return replay

        for attempt in range(self.max_commit_retries + 1):
            now = self._now(order_context)
            campaign, user_usage = await self._load_for_evaluation(order_context.user_id, campaign_id=campaign_id)
            if campaign is None:
                return self._reject(campaign_id, RejectionKind.NOT_FOUND, "折扣活动不存在")

            # EVALUATED
            priced, rejection = self._price(campaign, order_context, now, user_usage)
            if rejection is not None:
                return self._reject(campaign_id, rejection.kind, rejection.message)

            # VALIDATED
            constraints = await self.settings_service.get_discount_constraints()
            checked = self.validator.validate(order_context.order_total, priced.amount, constraints)
            if not checked.accepted:
                return self._reject(campaign_id, checked.rejection.kind, checked.rejection.message)

            record = self._build_record(
                campaign.id, order_context, checked.amount, priced.free_shipping,
                order_id, shopping_list_id, idempotency_key, metadata
            )

            # COMMITTED
            outcome = await self._commit([record], now, idempotency_key, order_context, attempt)
            if outcome is None:
                continue
            if isinstance(outcome, ApplicationResult):
                return outcome

            committed = outcome[0]
            logger.info(
                "折扣应用成功",
                campaign_id=campaign.id,
                user_id=order_context.user_id,
                amount=str(committed.discount_amount),
                usage_record_id=committed.id
            )
            return ApplicationResult(
                success=True,
                state=ApplicationState.COMMITTED,
                amount=committed.discount_amount,
                final_total=round_money(order_context.order_total - committed.discount_amount, "0.01"),
                usage_record_id=committed.id,
                applied=[AppliedCampaign(
                    campaign_id=campaign.id,
                    usage_record_id=committed.id,
                    amount=committed.discount_amount,
                    free_shipping=priced.free_shipping
                )],
                free_shipping=priced.free_shipping,
                warnings=checked.warnings
            )

        return self._reject(campaign_id, RejectionKind.USAGE_LIMIT_EXCEEDED, "折扣使用冲突过多，请稍后重试")

    async def apply_discount_code(
        self,
        code: str,
        order_context: OrderContext,
        order_id: Optional[str] = None,
        shopping_list_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ApplicationResult:
        """通过优惠码应用折扣"""
        async with self.session_maker() as session:
            campaign = await CampaignRepository(session).get_by_code(code)

        if campaign is None:
            return self._reject(code, RejectionKind.NOT_FOUND, "优惠码不存在")

        return await self.apply_discount(
            campaign.id,
            order_context,
            order_id=order_id,
            shopping_list_id=shopping_list_id,
            idempotency_key=idempotency_key,
            metadata=metadata
        )

    async def apply_automatic_discounts(
        self,
        order_context: OrderContext,
        order_id: Optional[str] = None,
        shopping_list_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ApplicationResult:
        """应用自动活动的叠加方案，选中的活动在一个事务内一起提交"""
        if idempotency_key:
            replay = await self._find_replay(idempotency_key, order_context)
            if replay is not None:
                return replay

        for attempt in range(self.max_commit_retries + 1):
            now = self._now(order_context)
            plan, allocations = await self._plan_automatic(order_context, now)
            if plan.rejection is not None:
                return self._reject(None, plan.rejection.kind, plan.rejection.message)

            records = [
                self._build_record(
                    priced.campaign.id, order_context, amount, priced.free_shipping,
                    order_id, shopping_list_id, idempotency_key, metadata
                )
                for priced, amount in allocations
            ]

            outcome = await self._commit(records, now, idempotency_key, order_context, attempt)
            if outcome is None:
                continue
            if isinstance(outcome, ApplicationResult):
                return outcome

            free_shipping_by_campaign = {priced.campaign.id: priced.free_shipping for priced, _ in allocations}
            total = sum((record.discount_amount for record in outcome), ZERO)
            logger.info(
                "自动折扣应用成功",
                campaign_ids=[record.campaign_id for record in outcome],
                user_id=order_context.user_id,
                amount=str(total)
            )
            return ApplicationResult(
                success=True,
                state=ApplicationState.COMMITTED,
                amount=total,
                final_total=round_money(order_context.order_total - total, "0.01"),
                usage_record_id=outcome[0].id,
                applied=[
                    AppliedCampaign(
                        campaign_id=record.campaign_id,
                        usage_record_id=record.id,
                        amount=record.discount_amount,
                        free_shipping=free_shipping_by_campaign.get(record.campaign_id, False)
                    )
                    for record in outcome
                ],
                free_shipping=plan.free_shipping,
                warnings=plan.warnings
            )

        return self._reject(None, RejectionKind.USAGE_LIMIT_EXCEEDED, "折扣使用冲突过多，请稍后重试")

    # ------------------------------------------------------------------
    # 内部步骤
    # ------------------------------------------------------------------

    async def _load_for_evaluation(
        self,
        user_id: str,
        campaign_id: Optional[str] = None,
        code: Optional[str] = None
    ) -> Tuple[Optional[Campaign], int]:
        """读取活动和用户已用次数，次数始终直接读数据库"""
        async with self.session_maker() as session:
            repo = CampaignRepository(session)
            campaign = await repo.get_by_id(campaign_id) if campaign_id else await repo.get_by_code(code or "")
            if campaign is None:
                return None, 0
            user_usage = await UsageLedger(session).count_for_user(campaign.id, user_id)
        return campaign, user_usage

    def _price(
        self,
        campaign: Campaign,
        order_context: OrderContext,
        now: datetime,
        user_usage: int
    ) -> Tuple[Optional[PricedCampaign], Optional[Rejection]]:
        """资格判断并计算金额"""
        eligibility = self.evaluator.is_eligible(campaign, order_context, now, user_usage)
        if not eligibility.eligible:
            return None, eligibility.to_rejection()

        calculation = self.calculator.calculate(campaign, order_context)
        if calculation.amount <= 0 and not calculation.free_shipping:
            return None, Rejection(kind=RejectionKind.NOT_ELIGIBLE, message="该订单没有可用的折扣金额")

        return PricedCampaign(
            campaign=campaign,
            amount=calculation.amount,
            free_shipping=calculation.free_shipping
        ), None

    async def _plan_automatic(
        self,
        order_context: OrderContext,
        now: datetime
    ) -> Tuple[AutomaticDiscountPlan, List[Tuple[PricedCampaign, Decimal]]]:
        """选出自动活动组合，并把系统约束的削减分摊到各活动上"""
        async with self.session_maker() as session:
            candidates = await CampaignRepository(session).find_active_candidates(
                current_time=now, automatic_only=True
            )
            usage_counts = await UsageLedger(session).counts_for_user(
                order_context.user_id, [c.id for c in candidates]
            )

        priced = []
        for campaign in candidates:
            candidate, _ = self._price(campaign, order_context, now, usage_counts.get(campaign.id, 0))
            if candidate is not None:
                priced.append(candidate)

        stacking = self.resolver.resolve(priced)
        total = order_context.order_total
        if not stacking.selected:
            return AutomaticDiscountPlan(
                final_total=total,
                rejection=Rejection(kind=RejectionKind.NOT_ELIGIBLE, message="没有可自动应用的折扣")
            ), []

        constraints = await self.settings_service.get_discount_constraints()
        checked = self.validator.validate(total, stacking.total_discount, constraints)
        if not checked.accepted:
            return AutomaticDiscountPlan(final_total=total, rejection=checked.rejection), []

        # 被削减到0且不免运费的活动不再计入方案，也不消耗使用次数
        allocations = [
            (priced, amount)
            for priced, amount in allocate_clamped_total(stacking.selected, checked.amount)
            if amount > 0 or priced.free_shipping
        ]
        if not allocations:
            return AutomaticDiscountPlan(
                final_total=total,
                rejection=Rejection(kind=RejectionKind.NOT_ELIGIBLE, message="系统约束削减后没有可用的折扣金额")
            ), []

        plan = AutomaticDiscountPlan(
            selected=[
                CampaignSummary.from_campaign(p.campaign, estimated_discount=amount, free_shipping=p.free_shipping)
                for p, amount in allocations
            ],
            total_discount=checked.amount,
            final_total=round_money(total - checked.amount, "0.01"),
            free_shipping=stacking.free_shipping,
            warnings=checked.warnings
        )
        return plan, allocations

    def _build_record(
        self,
        campaign_id: str,
        order_context: OrderContext,
        amount: Decimal,
        free_shipping: bool,
        order_id: Optional[str],
        shopping_list_id: Optional[str],
        idempotency_key: Optional[str],
        metadata: Optional[Dict[str, Any]]
    ) -> UsageRecordCreate:
        record_metadata = dict(metadata or {})
        record_metadata["free_shipping"] = free_shipping
        return UsageRecordCreate(
            campaign_id=campaign_id,
            user_id=order_context.user_id,
            order_id=order_id,
            shopping_list_id=shopping_list_id,
            discount_amount=amount,
            order_total=order_context.order_total,
            idempotency_key=idempotency_key,
            metadata=record_metadata
        )

    async def _commit(
        self,
        records: List[UsageRecordCreate],
        now: datetime,
        idempotency_key: Optional[str],
        order_context: OrderContext,
        attempt: int
    ):
        """
        提交使用记录

        Returns:
            成功时返回使用记录列表；需要重试时返回None；已确定结果时返回ApplicationResult
        """
        campaign_ids = [record.campaign_id for record in records]
        try:
            async with self.session_maker() as session:
                return await UsageLedger(session).record_usages_atomic(records, now=now)

        except UsageLimitExceededError as e:
            logger.info("提交阶段复核未通过", campaign_id=e.campaign_id, user_id=order_context.user_id)
            return self._reject(e.campaign_id, RejectionKind.USAGE_LIMIT_EXCEEDED, e.message)

        except CampaignNotFoundError as e:
            return self._reject(None, RejectionKind.NOT_FOUND, e.message)

        except (ConcurrentWriteConflictError, OperationalError) as e:
            logger.warning(
                "折扣提交并发冲突，重新校验后重试",
                campaign_ids=campaign_ids,
                attempt=attempt + 1,
                error=str(e)
            )
            return None

        except IntegrityError as e:
            if idempotency_key:
                replay = await self._find_replay(idempotency_key, order_context, campaign_ids)
                if replay is not None:
                    return replay
            logger.error("折扣使用记录写入失败", campaign_ids=campaign_ids, error=str(e))
            return self._reject(None, RejectionKind.NOT_ELIGIBLE, "折扣使用记录写入失败，请稍后重试")

    async def _find_replay(
        self,
        idempotency_key: str,
        order_context: OrderContext,
        campaign_ids: Optional[List[str]] = None
    ) -> Optional[ApplicationResult]:
        """查找同一用户同一幂等键已提交的结果"""
        async with self.session_maker() as session:
            records = await UsageLedger(session).find_by_idempotency_key(
                idempotency_key, user_id=order_context.user_id, campaign_ids=campaign_ids
            )

        if not records:
            return None

        logger.info("幂等键命中，返回已提交结果", idempotency_key=idempotency_key)
        return replay_result(records, order_context)

    def _reject(self, campaign_ref: Optional[str], kind: RejectionKind, message: str) -> ApplicationResult:
        logger.info("折扣应用被拒绝", campaign=campaign_ref, kind=kind.value, reason=message)
        return ApplicationResult.rejected(Rejection(kind=kind, message=message))


def allocate_clamped_total(
    selected: List[PricedCampaign],
    allowed_total: Decimal
) -> List[Tuple[PricedCampaign, Decimal]]:
    """
    把削减后的总额分摊到各活动

    超出部分从排序最靠后（优先级最低）的活动开始扣减。
    """
    amounts = [p.amount for p in selected]
    excess = sum(amounts, ZERO) - allowed_total
    index = len(amounts) - 1
    while excess > 0 and index >= 0:
        reduction = min(amounts[index], excess)
        amounts[index] -= reduction
        excess -= reduction
        index -= 1
    return list(zip(selected, amounts))


def replay_result(records: List[UsageRecord], order_context: OrderContext) -> ApplicationResult:
    """用已提交的使用记录重建应用结果"""
    total = sum((record.discount_amount for record in records), ZERO)
    order_total = records[0].order_total if records else order_context.order_total
    applied = [
        AppliedCampaign(
            campaign_id=record.campaign_id,
            usage_record_id=record.id,
            amount=record.discount_amount,
            free_shipping=bool(record.metadata.get("free_shipping", False))
        )
        for record in records
    ]
    return ApplicationResult(
        success=True,
        state=ApplicationState.COMMITTED,
        amount=total,
        final_total=round_money(order_total - total, "0.01"),
        usage_record_id=records[0].id,
        applied=applied,
        free_shipping=any(a.free_shipping for a in applied),
        replayed=True
    )
