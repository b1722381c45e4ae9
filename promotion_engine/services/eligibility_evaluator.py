"""
活动资格判断
纯函数逻辑，不访问数据库；用户已用次数由调用方从台账读出后传入
"""

from datetime import datetime
from typing import Optional

from promotion_engine.models.campaign import Campaign, CampaignStatus, DiscountTargetType
from promotion_engine.models.order_context import OrderContext
from promotion_engine.models.discount_result import EligibilityResult, RejectionKind


def day_of_week_index(moment: datetime) -> int:
    """星期编号，0=周日 ... 6=周六"""
    return (moment.weekday() + 1) % 7


class EligibilityEvaluator:
    """活动资格判断器，按固定顺序检查，返回第一个不满足的原因"""

    def is_eligible(
        self,
        campaign: Campaign,
        order_context: OrderContext,
        now: datetime,
        user_usage_count: int = 0
    ) -> EligibilityResult:
        """
        判断订单是否可以使用活动

        检查顺序：运营状态 -> 目标匹配 -> 单用户次数 -> 附加条件 -> 活动最低订单金额
        """
        for check in (
            lambda: self._check_active(campaign, now),
            lambda: self._check_target(campaign, order_context),
            lambda: self._check_user_usage(campaign, user_usage_count),
            lambda: self._check_conditions(campaign, order_context, now),
            lambda: self._check_minimum_order(campaign, order_context),
        ):
            failure = check()
            if failure is not None:
                return failure

        return EligibilityResult.passed()

    def _check_active(self, campaign: Campaign, now: datetime) -> Optional[EligibilityResult]:
        if campaign.status == CampaignStatus.EXPIRED or now > campaign.end_date:
            return EligibilityResult.failed(RejectionKind.EXPIRED, "折扣活动已过期")
        if campaign.status != CampaignStatus.ACTIVE:
            return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "折扣活动未启用")
        if now < campaign.start_date:
            return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "折扣活动尚未开始")
        if campaign.usage_limit is not None and campaign.usage_count >= campaign.usage_limit:
            return EligibilityResult.failed(RejectionKind.USAGE_LIMIT_EXCEEDED, "折扣活动使用次数已达上限")
        return None

    def _check_target(self, campaign: Campaign, ctx: OrderContext) -> Optional[EligibilityResult]:
        target = campaign.target_type

        if target == DiscountTargetType.GLOBAL:
            return None
        if target == DiscountTargetType.MARKET:
            if ctx.market_id is None or ctx.market_id not in campaign.target_market_ids:
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "该折扣不适用于当前市场")
            return None
        if target == DiscountTargetType.PRODUCT:
            if not set(ctx.product_ids) & set(campaign.target_product_ids):
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "订单中没有适用该折扣的商品")
            return None
        if target == DiscountTargetType.CATEGORY:
            if not set(ctx.categories) & set(campaign.target_categories):
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "订单中没有适用该折扣的品类")
            return None
        if target == DiscountTargetType.USER:
            if ctx.user_id not in campaign.target_user_ids:
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "该折扣仅限指定用户使用")
            return None
        if target == DiscountTargetType.FIRST_ORDER:
            if not ctx.is_first_order:
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "该折扣仅限首单使用")
            return None
        if target == DiscountTargetType.REFERRAL:
            if not ctx.has_referral_bonus:
                return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "没有可用的推荐奖励")
            return None

        return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, f"未知的适用对象类型: {target}")

    def _check_user_usage(self, campaign: Campaign, user_usage_count: int) -> Optional[EligibilityResult]:
        if campaign.usage_limit_per_user is not None and user_usage_count >= campaign.usage_limit_per_user:
            return EligibilityResult.failed(RejectionKind.USAGE_LIMIT_EXCEEDED, "您已达到该折扣的使用上限")
        return None

    def _check_conditions(self, campaign: Campaign, ctx: OrderContext, now: datetime) -> Optional[EligibilityResult]:
        conditions = campaign.conditions

        if conditions.day_of_week is not None and day_of_week_index(now) not in conditions.day_of_week:
            return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "今天不在折扣适用日期内")

        if conditions.time_of_day is not None and not conditions.time_of_day.contains(now.time().replace(tzinfo=None)):
            return EligibilityResult.failed(
                RejectionKind.NOT_ELIGIBLE,
                f"折扣仅在 {conditions.time_of_day.start}-{conditions.time_of_day.end} 可用"
            )

        if conditions.user_type is not None and ctx.user_type != conditions.user_type:
            return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "当前用户类型不适用该折扣")

        if conditions.order_count is not None and not conditions.order_count.contains(ctx.order_count or 0):
            return EligibilityResult.failed(RejectionKind.NOT_ELIGIBLE, "历史订单数不满足折扣条件")

        # 从未下单视为满足
        if (
            conditions.last_order_days is not None and
            ctx.days_since_last_order is not None and
            ctx.days_since_last_order < conditions.last_order_days
        ):
            return EligibilityResult.failed(
                RejectionKind.NOT_ELIGIBLE,
                f"距上次下单需至少 {conditions.last_order_days} 天"
            )

        return None

    def _check_minimum_order(self, campaign: Campaign, ctx: OrderContext) -> Optional[EligibilityResult]:
        if campaign.minimum_order_amount is not None and ctx.order_total < campaign.minimum_order_amount:
            return EligibilityResult.failed(
                RejectionKind.NOT_ELIGIBLE,
                f"订单金额不满足最低要求 {campaign.minimum_order_amount}"
            )
        return None


# 全局资格判断实例
eligibility_evaluator = EligibilityEvaluator()
