"""
活动叠加规则
"""

from decimal import Decimal
from typing import List

from promotion_engine.models.discount_result import PricedCampaign, StackingResult


def stacking_sort_key(priced: PricedCampaign):
    """优先级降序，其次折扣金额降序，最后按活动ID保证顺序稳定"""
    return (-priced.campaign.priority, -priced.amount, priced.campaign.id)


class StackingResolver:
    """叠加规则选择器"""

    def resolve(self, priced_campaigns: List[PricedCampaign]) -> StackingResult:
        """
        从已计价的候选活动中选出最终组合

        排序后总是选中第一个；后续活动只有在它和所有已选活动都可叠加时才加入，
        遇到第一个不能加入的活动即停止。
        """
        if not priced_campaigns:
            return StackingResult()

        ordered = sorted(priced_campaigns, key=stacking_sort_key)
        selected = [ordered[0]]

        for candidate in ordered[1:]:
            if not (candidate.campaign.is_stackable and all(p.campaign.is_stackable for p in selected)):
                break
            selected.append(candidate)

        return StackingResult(
            selected=selected,
            total_discount=sum((p.amount for p in selected), Decimal("0")),
            free_shipping=any(p.free_shipping for p in selected)
        )


# 全局叠加规则实例
stacking_resolver = StackingResolver()
