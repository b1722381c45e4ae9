"""
系统级折扣约束校验
"""

from decimal import Decimal
from typing import List, Optional

from promotion_engine.models.settings import DiscountConstraints
from promotion_engine.models.discount_result import (
    ConstraintResult,
    DiscountWarning,
    Rejection,
    RejectionKind,
    WarningKind
)
from promotion_engine.services.discount_calculator import round_money

HUNDRED = Decimal("100")


class ConstraintValidator:
    """约束校验器：低于最低订单金额则拒绝，超过上限则削减并告警，从不增加金额"""

    def __init__(self, precision: Optional[str] = None):
        self.precision = precision

    def validate(
        self,
        order_total: Decimal,
        proposed_amount: Decimal,
        constraints: DiscountConstraints
    ) -> ConstraintResult:
        if proposed_amount < 0:
            raise ValueError("折扣金额不能为负数")

        if order_total < constraints.minimum_order_for_discount:
            return ConstraintResult(
                accepted=False,
                amount=Decimal("0"),
                rejection=Rejection(
                    kind=RejectionKind.BELOW_MINIMUM_ORDER,
                    message=f"订单金额需至少 {constraints.minimum_order_for_discount} 才能使用折扣"
                )
            )

        amount = proposed_amount
        warnings: List[DiscountWarning] = []

        if order_total > 0:
            percentage_cap = round_money(order_total * constraints.maximum_discount_percentage / HUNDRED, self.precision)
            if amount > percentage_cap:
                warnings.append(DiscountWarning(
                    kind=WarningKind.CONSTRAINT_CLAMPED,
                    message=f"折扣不能超过订单金额的 {constraints.maximum_discount_percentage}%，已调整为 {percentage_cap}",
                    original_amount=amount,
                    adjusted_amount=percentage_cap
                ))
                amount = percentage_cap

        if amount > constraints.maximum_single_discount_amount:
            cap = constraints.maximum_single_discount_amount
            warnings.append(DiscountWarning(
                kind=WarningKind.CONSTRAINT_CLAMPED,
                message=f"单次折扣不能超过 {cap}，已调整为 {cap}",
                original_amount=amount,
                adjusted_amount=cap
            ))
            amount = cap

        return ConstraintResult(accepted=True, amount=amount, warnings=warnings)


# 全局约束校验实例
constraint_validator = ConstraintValidator()
