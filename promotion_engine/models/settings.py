"""
系统设置相关数据模型
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from enum import Enum


class SettingKey(str, Enum):
    """系统设置键"""
    MINIMUM_ORDER_FOR_DISCOUNT = "minimum_order_for_discount"
    MAXIMUM_DISCOUNT_PERCENTAGE = "maximum_discount_percentage"
    MAXIMUM_SINGLE_DISCOUNT_AMOUNT = "maximum_single_discount_amount"
    DEFAULT_CURRENCY = "default_currency"


class SettingValueType(str, Enum):
    """设置值类型"""
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class SettingValue(BaseModel):
    """设置值信封，与数据库JSON列结构一致"""

    value: Any = Field(..., description="设置值")
    type: SettingValueType = Field(..., description="值类型")
    description: Optional[str] = Field(None, description="说明")
    category: str = Field(default="general", description="分类")
    is_public: bool = Field(default=False, description="是否对前端公开")
    validation: Dict[str, Any] = Field(default_factory=dict, description="取值约束")

    @staticmethod
    def infer_type(value: Any) -> SettingValueType:
        """根据值推断类型"""
        if isinstance(value, bool):
            return SettingValueType.BOOLEAN
        if isinstance(value, (int, float, Decimal)):
            return SettingValueType.NUMBER
        if isinstance(value, (list, tuple)):
            return SettingValueType.ARRAY
        if isinstance(value, dict):
            return SettingValueType.OBJECT
        return SettingValueType.STRING


class DiscountConstraints(BaseModel):
    """系统级折扣约束快照（只读）"""

    minimum_order_for_discount: Decimal = Field(..., ge=0, description="享受折扣的最低订单金额")
    maximum_discount_percentage: Decimal = Field(..., ge=0, le=100, description="折扣占订单金额的最大百分比")
    maximum_single_discount_amount: Decimal = Field(..., ge=0, description="单次折扣最大金额")
