"""
系统设置默认值配置 - 初始化数据库时写入，数据库缺失时兜底
"""

from typing import Any, Dict, Optional

from promotion_engine.core.config import settings
from promotion_engine.models.settings import SettingKey, SettingValue, SettingValueType

# 默认系统设置字典
DEFAULT_SETTINGS_CONFIG: Dict[str, Dict[str, Any]] = {
    SettingKey.MINIMUM_ORDER_FOR_DISCOUNT.value: {
        "value": settings.default_minimum_order_for_discount,
        "type": SettingValueType.NUMBER,
        "description": "享受折扣的最低订单金额",
        "category": "discounts",
        "is_public": True,
        "validation": {"min": 0}
    },
    SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value: {
        "value": settings.default_maximum_discount_percentage,
        "type": SettingValueType.NUMBER,
        "description": "折扣占订单金额的最大百分比",
        "category": "discounts",
        "is_public": False,
        "validation": {"min": 0, "max": 100}
    },
    SettingKey.MAXIMUM_SINGLE_DISCOUNT_AMOUNT.value: {
        "value": settings.default_maximum_single_discount_amount,
        "type": SettingValueType.NUMBER,
        "description": "单次折扣最大金额",
        "category": "discounts",
        "is_public": False,
        "validation": {"min": 0}
    },
    SettingKey.DEFAULT_CURRENCY.value: {
        "value": "NGN",
        "type": SettingValueType.STRING,
        "description": "默认货币代码",
        "category": "general",
        "is_public": True,
        "validation": {"enum": ["NGN", "USD", "GBP"]}
    }
}


def get_default_settings() -> Dict[str, SettingValue]:
    """
    获取所有默认设置

    Returns:
        设置键到设置值信封的字典
    """
    return {key: SettingValue(**config) for key, config in DEFAULT_SETTINGS_CONFIG.items()}


def get_default_value(key: str) -> Optional[Any]:
    """
    获取指定设置的默认值

    Args:
        key: 设置键

    Returns:
        默认值，未定义的键返回None
    """
    config = DEFAULT_SETTINGS_CONFIG.get(key)
    return config["value"] if config else None
