"""
订单上下文模型 - 单次评估/应用调用的输入，不持久化
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from promotion_engine.models.campaign import UserType, to_naive_local


class OrderLineItem(BaseModel):
    """订单行项目，买X送Y计算时需要"""

    product_id: str = Field(..., description="商品ID")
    quantity: int = Field(..., ge=0, description="数量")
    unit_price: Decimal = Field(..., ge=0, description="单价")
    category: Optional[str] = Field(None, description="品类")
    is_discounted: bool = Field(default=False, description="是否已参与其他折扣")

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderContext(BaseModel):
    """订单上下文"""

    user_id: str = Field(..., description="用户ID")
    order_total: Decimal = Field(..., ge=0, description="订单原始金额（折扣前）")
    market_id: Optional[str] = Field(None, description="市场ID")
    product_ids: List[str] = Field(default_factory=list, description="商品ID列表")
    categories: List[str] = Field(default_factory=list, description="品类列表")
    items: List[OrderLineItem] = Field(default_factory=list, description="订单行项目")
    timestamp: Optional[datetime] = Field(None, description="下单时间，为空时使用当前时间")

    # 以下由调用方预先计算，引擎本身不掌握订单历史
    user_type: Optional[UserType] = Field(None, description="用户类型")
    order_count: Optional[int] = Field(None, ge=0, description="历史订单数")
    days_since_last_order: Optional[int] = Field(None, ge=0, description="距上次下单天数，从未下单为空")
    is_first_order: bool = Field(default=False, description="是否首单")
    has_referral_bonus: bool = Field(default=False, description="是否有可用推荐奖励")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        """带时区的下单时间统一转换为本地时间"""
        return to_naive_local(v)

    @model_validator(mode="after")
    def derive_product_ids(self):
        """只传了行项目时，由行项目推导商品ID和品类"""
        if self.items and not self.product_ids:
            self.product_ids = list(dict.fromkeys(item.product_id for item in self.items))
        if self.items and not self.categories:
            self.categories = list(dict.fromkeys(item.category for item in self.items if item.category))
        return self
