"""
折扣评估、计算与应用结果模型

所有拒绝结果都是纯数据（类型 + 提示信息），不会以异常形式抛给调用方。
"""

from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum

from promotion_engine.models.campaign import Campaign, CampaignSummary


class RejectionKind(str, Enum):
    """拒绝类型枚举"""
    NOT_FOUND = "not_found"  # 活动或优惠码不存在
    NOT_ELIGIBLE = "not_eligible"  # 不满足使用条件
    EXPIRED = "expired"  # 已过期
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"  # 使用次数已达上限
    BELOW_MINIMUM_ORDER = "below_minimum_order"  # 未达到系统最低订单金额


class WarningKind(str, Enum):
    """警告类型枚举"""
    CONSTRAINT_CLAMPED = "constraint_clamped"  # 折扣金额被系统约束削减


class ApplicationState(str, Enum):
    """折扣应用状态"""
    REQUESTED = "requested"
    EVALUATED = "evaluated"
    VALIDATED = "validated"
    COMMITTED = "committed"
    REJECTED = "rejected"


class Rejection(BaseModel):
    """拒绝结果"""

    kind: RejectionKind = Field(..., description="拒绝类型")
    message: str = Field(..., description="提示信息")


class DiscountWarning(BaseModel):
    """附加在成功结果上的警告"""

    kind: WarningKind = Field(..., description="警告类型")
    message: str = Field(..., description="提示信息")
    original_amount: Optional[Decimal] = Field(None, description="削减前金额")
    adjusted_amount: Optional[Decimal] = Field(None, description="削减后金额")


class EligibilityResult(BaseModel):
    """资格判断结果"""

    eligible: bool
    reason: Optional[str] = None
    rejection_kind: Optional[RejectionKind] = None

    @classmethod
    def passed(cls) -> "EligibilityResult":
        return cls(eligible=True)

    @classmethod
    def failed(cls, kind: RejectionKind, reason: str) -> "EligibilityResult":
        return cls(eligible=False, reason=reason, rejection_kind=kind)

    def to_rejection(self) -> Optional[Rejection]:
        if self.eligible:
            return None
        return Rejection(kind=self.rejection_kind or RejectionKind.NOT_ELIGIBLE, message=self.reason or "")


class DiscountCalculation(BaseModel):
    """单个活动的折扣计算结果"""

    amount: Decimal = Field(default=Decimal("0"), ge=0, description="折扣金额")
    free_shipping: bool = Field(default=False, description="是否免运费")


class PricedCampaign(BaseModel):
    """已计算折扣金额的候选活动"""

    campaign: Campaign
    amount: Decimal = Decimal("0")
    free_shipping: bool = False


class StackingResult(BaseModel):
    """叠加规则选择结果"""

    selected: List[PricedCampaign] = Field(default_factory=list)
    total_discount: Decimal = Decimal("0")
    free_shipping: bool = False

    @property
    def campaign_ids(self) -> List[str]:
        return [priced.campaign.id for priced in self.selected]


class ConstraintResult(BaseModel):
    """系统约束校验结果"""

    accepted: bool
    amount: Decimal = Decimal("0")
    warnings: List[DiscountWarning] = Field(default_factory=list)
    rejection: Optional[Rejection] = None


class DiscountPreview(BaseModel):
    """折扣预览结果"""

    campaign_id: str
    eligible: bool
    amount: Decimal = Decimal("0")
    final_total: Decimal = Decimal("0")
    effective_percentage: Decimal = Decimal("0")
    free_shipping: bool = False
    warnings: List[DiscountWarning] = Field(default_factory=list)
    rejection: Optional[Rejection] = None


class CodeValidation(BaseModel):
    """优惠码验证结果"""

    valid: bool
    campaign: Optional[Campaign] = None
    amount: Optional[Decimal] = None
    free_shipping: bool = False
    warnings: List[DiscountWarning] = Field(default_factory=list)
    rejection: Optional[Rejection] = None


class AppliedCampaign(BaseModel):
    """已提交的单个活动折扣"""

    campaign_id: str
    usage_record_id: str
    amount: Decimal
    free_shipping: bool = False


class ApplicationResult(BaseModel):
    """折扣应用结果"""

    success: bool
    state: ApplicationState
    amount: Decimal = Decimal("0")
    final_total: Optional[Decimal] = None
    usage_record_id: Optional[str] = None
    applied: List[AppliedCampaign] = Field(default_factory=list)
    free_shipping: bool = False
    warnings: List[DiscountWarning] = Field(default_factory=list)
    rejection: Optional[Rejection] = None
    replayed: bool = Field(default=False, description="是否为幂等重放的既有结果")

    @classmethod
    def rejected(cls, rejection: Rejection) -> "ApplicationResult":
        return cls(success=False, state=ApplicationState.REJECTED, rejection=rejection)


class AutomaticDiscountPlan(BaseModel):
    """自动应用活动的叠加方案"""

    selected: List[CampaignSummary] = Field(default_factory=list)
    total_discount: Decimal = Decimal("0")
    final_total: Decimal = Decimal("0")
    free_shipping: bool = False
    warnings: List[DiscountWarning] = Field(default_factory=list)
    rejection: Optional[Rejection] = None
