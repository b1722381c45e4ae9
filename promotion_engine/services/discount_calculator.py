"""
折扣金额计算
纯函数逻辑：根据活动类型和订单上下文计算折扣金额，结果始终落在 [0, 订单金额] 内
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from promotion_engine.core.config import settings
from promotion_engine.models.campaign import Campaign, DiscountType
from promotion_engine.models.order_context import OrderContext, OrderLineItem
from promotion_engine.models.discount_result import DiscountCalculation

HUNDRED = Decimal("100")
ZERO = Decimal("0")


def round_money(amount: Decimal, precision: Optional[str] = None) -> Decimal:
    """四舍五入到货币最小单位"""
    return Decimal(amount).quantize(Decimal(precision or settings.currency_precision), rounding=ROUND_HALF_UP)


def cheapest_units_total(lines: Iterable[Tuple[Decimal, int]], count: int) -> Decimal:
    """
    取最便宜的 count 件商品的价格之和

    Args:
        lines: (单价, 数量) 序列
        count: 需要取的件数
    """
    total = ZERO
    remaining = count
    for unit_price, quantity in sorted(lines, key=lambda line: line[0]):
        if remaining <= 0:
            break
        taken = min(quantity, remaining)
        total += unit_price * taken
        remaining -= taken
    return total


class DiscountCalculator:
    """折扣计算器"""

    def __init__(self, precision: Optional[str] = None):
        self.precision = precision or settings.currency_precision

    def calculate(self, campaign: Campaign, order_context: OrderContext) -> DiscountCalculation:
        """计算单个活动的折扣金额"""
        order_total = order_context.order_total

        if campaign.discount_type == DiscountType.FREE_SHIPPING:
            return DiscountCalculation(amount=ZERO, free_shipping=True)

        if campaign.discount_type == DiscountType.PERCENTAGE:
            base = self._percentage_base(campaign, order_context)
            amount = base * campaign.value / HUNDRED
            amount = self._apply_cap(amount, campaign.maximum_discount_amount)
        elif campaign.discount_type == DiscountType.FIXED_AMOUNT:
            amount = campaign.value
        elif campaign.discount_type == DiscountType.BUY_X_GET_Y:
            free_value = self.free_units_value(campaign, order_context.items)
            amount = free_value * campaign.value / HUNDRED
            amount = self._apply_cap(amount, campaign.maximum_discount_amount)
        else:
            amount = ZERO

        amount = min(max(amount, ZERO), order_total)
        return DiscountCalculation(amount=round_money(amount, self.precision), free_shipping=False)

    def _percentage_base(self, campaign: Campaign, ctx: OrderContext) -> Decimal:
        """百分比折扣的计算基数，可排除已打折商品"""
        if not (campaign.conditions.exclude_discounted_items and ctx.items):
            return ctx.order_total
        discounted = sum((item.subtotal for item in ctx.items if item.is_discounted), ZERO)
        return max(ctx.order_total - discounted, ZERO)

    @staticmethod
    def _apply_cap(amount: Decimal, cap: Optional[Decimal]) -> Decimal:
        if cap is not None:
            return min(amount, cap)
        return amount

    def free_units_value(self, campaign: Campaign, items: List[OrderLineItem]) -> Decimal:
        """
        买X送Y：计算赠送商品的原价合计，赠送最便宜的商品

        购买池与赠送池相同（未指定赠送商品，或与购买商品相同）时，每凑满 B+G 件送 G 件；
        apply_to_same_product 时按商品分别成组；
        两个池不同时，购买池每满 B 件可从赠送池中送 G 件。
        """
        config = campaign.buy_x_get_y_config
        if not config or not config.buy_quantity or not config.get_quantity or not items:
            return ZERO

        buy_qty, get_qty = config.buy_quantity, config.get_quantity
        lines = [item for item in items if item.quantity > 0]
        if campaign.conditions.exclude_discounted_items:
            lines = [item for item in lines if not item.is_discounted]

        buy_ids = set(config.buy_product_ids)
        get_ids = set(config.get_product_ids)
        buy_pool = [item for item in lines if not buy_ids or item.product_id in buy_ids]

        if not get_ids or get_ids == buy_ids:
            if config.apply_to_same_product:
                by_product: Dict[str, List[OrderLineItem]] = {}
                for item in buy_pool:
                    by_product.setdefault(item.product_id, []).append(item)
                return sum(
                    (self._same_pool_free_value(group, buy_qty, get_qty) for group in by_product.values()),
                    ZERO
                )
            return self._same_pool_free_value(buy_pool, buy_qty, get_qty)

        buy_units = sum(item.quantity for item in buy_pool if item.product_id not in get_ids)
        get_pool = [item for item in lines if item.product_id in get_ids]
        available = sum(item.quantity for item in get_pool)
        free_count = min((buy_units // buy_qty) * get_qty, available)
        return cheapest_units_total(((item.unit_price, item.quantity) for item in get_pool), free_count)

    @staticmethod
    def _same_pool_free_value(pool: List[OrderLineItem], buy_qty: int, get_qty: int) -> Decimal:
        units = sum(item.quantity for item in pool)
        free_count = (units // (buy_qty + get_qty)) * get_qty
        return cheapest_units_total(((item.unit_price, item.quantity) for item in pool), free_count)


# 全局折扣计算实例
discount_calculator = DiscountCalculator()
