"""
数据模型包初始化文件
"""

from .campaign import (
    Campaign,
    CampaignCreate,
    CampaignUpdate,
    CampaignSummary,
    CampaignConditions,
    CampaignStatus,
    BuyXGetYConfig,
    DiscountType,
    DiscountTargetType,
    OrderCountRange,
    TimeOfDayWindow,
    UserType,
    validate_campaign
)
from .order_context import OrderContext, OrderLineItem
from .usage import UsageRecord, UsageRecordCreate, CampaignStatistics, CampaignTopUser
from .settings import DiscountConstraints, SettingKey, SettingValue, SettingValueType
from .discount_result import (
    ApplicationResult,
    ApplicationState,
    AppliedCampaign,
    AutomaticDiscountPlan,
    CodeValidation,
    ConstraintResult,
    DiscountCalculation,
    DiscountPreview,
    DiscountWarning,
    EligibilityResult,
    PricedCampaign,
    Rejection,
    RejectionKind,
    StackingResult,
    WarningKind
)

__all__ = [
    "Campaign",
    "CampaignCreate",
    "CampaignUpdate",
    "CampaignSummary",
    "CampaignConditions",
    "CampaignStatus",
    "BuyXGetYConfig",
    "DiscountType",
    "DiscountTargetType",
    "OrderCountRange",
    "TimeOfDayWindow",
    "UserType",
    "validate_campaign",
    "OrderContext",
    "OrderLineItem",
    "UsageRecord",
    "UsageRecordCreate",
    "CampaignStatistics",
    "CampaignTopUser",
    "DiscountConstraints",
    "SettingKey",
    "SettingValue",
    "SettingValueType",
    "ApplicationResult",
    "ApplicationState",
    "AppliedCampaign",
    "AutomaticDiscountPlan",
    "CodeValidation",
    "ConstraintResult",
    "DiscountCalculation",
    "DiscountPreview",
    "DiscountWarning",
    "EligibilityResult",
    "PricedCampaign",
    "Rejection",
    "RejectionKind",
    "StackingResult",
    "WarningKind"
]
