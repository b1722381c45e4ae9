"""
服务包初始化文件
"""

from .eligibility_evaluator import EligibilityEvaluator, eligibility_evaluator
from .discount_calculator import DiscountCalculator, discount_calculator
from .stacking_resolver import StackingResolver, stacking_resolver
from .constraint_validator import ConstraintValidator, constraint_validator
from .settings_service import SettingsCache, SystemSettingsService
from .discount_application_service import DiscountApplicationService
from .campaign_admin_service import CampaignAdminService

__all__ = [
    "EligibilityEvaluator",
    "eligibility_evaluator",
    "DiscountCalculator",
    "discount_calculator",
    "StackingResolver",
    "stacking_resolver",
    "ConstraintValidator",
    "constraint_validator",
    "SettingsCache",
    "SystemSettingsService",
    "DiscountApplicationService",
    "CampaignAdminService"
]
