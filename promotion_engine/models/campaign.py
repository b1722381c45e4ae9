"""
折扣活动相关数据模型
"""

from decimal import Decimal
from datetime import datetime, time
from typing import List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum


class DiscountType(str, Enum):
    """折扣类型枚举"""
    PERCENTAGE = "percentage"  # 百分比折扣
    FIXED_AMOUNT = "fixed_amount"  # 固定金额折扣
    BUY_X_GET_Y = "buy_x_get_y"  # 买X送Y
    FREE_SHIPPING = "free_shipping"  # 免运费


class DiscountTargetType(str, Enum):
    """折扣适用对象枚举"""
    GLOBAL = "global"  # 整单
    MARKET = "market"  # 指定市场
    PRODUCT = "product"  # 指定商品
    CATEGORY = "category"  # 指定品类
    USER = "user"  # 指定用户
    REFERRAL = "referral"  # 推荐奖励
    FIRST_ORDER = "first_order"  # 首单


class CampaignStatus(str, Enum):
    """活动状态枚举"""
    DRAFT = "draft"  # 草稿
    ACTIVE = "active"  # 进行中
    PAUSED = "paused"  # 已暂停
    EXPIRED = "expired"  # 已过期
    CANCELLED = "cancelled"  # 已取消


class UserType(str, Enum):
    """用户类型枚举"""
    CUSTOMER = "customer"
    AGENT = "agent"


class TimeOfDayWindow(BaseModel):
    """每日生效时间段，格式 HH:MM，左闭右开"""

    model_config = ConfigDict(extra="forbid")

    start: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="开始时间")
    end: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="结束时间")

    @property
    def start_time(self) -> time:
        return time.fromisoformat(self.start)

    @property
    def end_time(self) -> time:
        return time.fromisoformat(self.end)

    def contains(self, moment: time) -> bool:
        """判断时刻是否在时间段内，start > end 视为跨越午夜"""
        start, end = self.start_time, self.end_time
        if start <= end:
            return start <= moment < end
        return moment >= start or moment < end


class OrderCountRange(BaseModel):
    """历史订单数区间（闭区间）"""

    model_config = ConfigDict(extra="forbid")

    min: Optional[int] = Field(None, ge=0, description="最少订单数")
    max: Optional[int] = Field(None, ge=0, description="最多订单数")

    def contains(self, count: int) -> bool:
        if self.min is not None and count < self.min:
            return False
        if self.max is not None and count > self.max:
            return False
        return True


class CampaignConditions(BaseModel):
    """活动附加条件，每个字段对应一种独立的判断条件，未设置即不限制"""

    model_config = ConfigDict(extra="forbid")

    user_type: Optional[UserType] = Field(None, description="限定用户类型")
    day_of_week: Optional[Set[int]] = Field(None, description="限定星期几，0=周日 ... 6=周六")
    time_of_day: Optional[TimeOfDayWindow] = Field(None, description="每日生效时间段")
    order_count: Optional[OrderCountRange] = Field(None, description="历史订单数区间")
    last_order_days: Optional[int] = Field(None, ge=0, description="距上次下单至少天数")
    exclude_discounted_items: bool = Field(default=False, description="已打折商品不参与计算")
    include_shipping_in_minimum: bool = Field(default=False, description="最低消费是否包含运费")

    @field_validator("day_of_week")
    @classmethod
    def validate_day_of_week(cls, v):
        """验证星期取值"""
        if v is not None and any(day < 0 or day > 6 for day in v):
            raise ValueError("星期取值必须在0-6之间")
        return v


class BuyXGetYConfig(BaseModel):
    """买X送Y配置"""

    model_config = ConfigDict(extra="forbid")

    buy_quantity: Optional[int] = Field(None, ge=1, description="购买数量")
    get_quantity: Optional[int] = Field(None, ge=1, description="赠送数量")
    buy_product_ids: List[str] = Field(default_factory=list, description="参与购买的商品ID")
    get_product_ids: List[str] = Field(default_factory=list, description="可赠送的商品ID")
    apply_to_same_product: bool = Field(default=False, description="赠品必须与购买商品相同")


def to_naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """带时区的时间转换为本地时间并去掉时区信息，与数据库中的业务时间保持同一口径"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _normalize_code(value: Optional[str]) -> Optional[str]:
    """优惠码统一去空格并转大写，实现大小写不敏感"""
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


class Campaign(BaseModel):
    """折扣活动基础模型"""

    id: str = Field(..., description="活动ID")
    name: str = Field(..., min_length=1, max_length=200, description="活动名称")
    description: Optional[str] = Field(None, description="活动描述")
    code: Optional[str] = Field(None, max_length=50, description="优惠码，自动应用的活动可为空")
    discount_type: DiscountType = Field(..., description="折扣类型")
    target_type: DiscountTargetType = Field(..., description="适用对象类型")
    value: Decimal = Field(..., description="折扣值，百分比(0-100)或固定金额")
    minimum_order_amount: Optional[Decimal] = Field(None, ge=0, description="最低订单金额")
    maximum_discount_amount: Optional[Decimal] = Field(None, ge=0, description="最大折扣金额")
    usage_limit: Optional[int] = Field(None, ge=1, description="总使用次数限制")
    usage_limit_per_user: Optional[int] = Field(None, ge=1, description="单用户使用次数限制")
    usage_count: int = Field(default=0, ge=0, description="已使用次数")
    start_date: datetime = Field(..., description="开始时间")
    end_date: datetime = Field(..., description="结束时间")
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT, description="活动状态")
    is_automatic_apply: bool = Field(default=False, description="无需优惠码自动应用")
    is_stackable: bool = Field(default=False, description="可与其他活动叠加")
    priority: int = Field(default=0, description="优先级，数值越大越优先")
    conditions: CampaignConditions = Field(default_factory=CampaignConditions, description="附加条件")
    buy_x_get_y_config: Optional[BuyXGetYConfig] = Field(None, description="买X送Y配置")
    target_product_ids: List[str] = Field(default_factory=list, description="适用商品ID")
    target_market_ids: List[str] = Field(default_factory=list, description="适用市场ID")
    target_user_ids: List[str] = Field(default_factory=list, description="适用用户ID")
    target_categories: List[str] = Field(default_factory=list, description="适用品类")
    created_by: Optional[str] = Field(None, description="创建人")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return _normalize_code(v)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_local(v)

    def is_operationally_active(self, now: datetime) -> bool:
        """状态为进行中、在有效期内且总次数未用完"""
        return (
            self.status == CampaignStatus.ACTIVE and
            self.start_date <= now <= self.end_date and
            (self.usage_limit is None or self.usage_count < self.usage_limit)
        )

    def remaining_usage(self) -> Optional[int]:
        """剩余可用次数，无限制返回None"""
        if self.usage_limit is None:
            return None
        return max(self.usage_limit - self.usage_count, 0)


def validate_campaign(campaign: Campaign) -> List[str]:
    """
    校验活动配置的业务约束，持久化前显式调用

    Returns:
        错误信息列表，为空表示通过
    """
    errors: List[str] = []

    if campaign.discount_type == DiscountType.PERCENTAGE and not (Decimal("0") <= campaign.value <= Decimal("100")):
        errors.append("百分比折扣值必须在0-100之间")

    if campaign.discount_type == DiscountType.FIXED_AMOUNT and campaign.value < 0:
        errors.append("固定金额折扣值不能为负数")

    if campaign.discount_type == DiscountType.BUY_X_GET_Y:
        config = campaign.buy_x_get_y_config
        if not config or not config.buy_quantity or not config.get_quantity:
            errors.append("买X送Y活动必须配置购买数量和赠送数量")
        if not (Decimal("0") <= campaign.value <= Decimal("100")):
            errors.append("买X送Y的折扣值表示赠品减免比例，必须在0-100之间")

    if campaign.discount_type == DiscountType.FREE_SHIPPING and campaign.value < 0:
        errors.append("折扣值不能为负数")

    if campaign.start_date >= campaign.end_date:
        errors.append("开始时间必须早于结束时间")

    if campaign.target_type == DiscountTargetType.MARKET and not campaign.target_market_ids:
        errors.append("市场类活动必须指定适用市场")
    if campaign.target_type == DiscountTargetType.PRODUCT and not campaign.target_product_ids:
        errors.append("商品类活动必须指定适用商品")
    if campaign.target_type == DiscountTargetType.CATEGORY and not campaign.target_categories:
        errors.append("品类活动必须指定适用品类")
    if campaign.target_type == DiscountTargetType.USER and not campaign.target_user_ids:
        errors.append("用户定向活动必须指定适用用户")

    if not campaign.is_automatic_apply and not campaign.code:
        errors.append("非自动应用的活动必须设置优惠码")

    return errors


class CampaignCreate(BaseModel):
    """创建折扣活动模型"""

    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    code: Optional[str] = Field(None, max_length=50)
    discount_type: DiscountType = Field(...)
    target_type: DiscountTargetType = Field(...)
    value: Decimal = Field(...)
    minimum_order_amount: Optional[Decimal] = Field(None, ge=0)
    maximum_discount_amount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_limit_per_user: Optional[int] = Field(None, ge=1)
    start_date: datetime = Field(...)
    end_date: datetime = Field(...)
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)
    is_automatic_apply: bool = False
    is_stackable: bool = False
    priority: int = 0
    conditions: CampaignConditions = Field(default_factory=CampaignConditions)
    buy_x_get_y_config: Optional[BuyXGetYConfig] = None
    target_product_ids: List[str] = Field(default_factory=list)
    target_market_ids: List[str] = Field(default_factory=list)
    target_user_ids: List[str] = Field(default_factory=list)
    target_categories: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return _normalize_code(v)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_local(v)


class CampaignUpdate(BaseModel):
    """更新折扣活动模型，使用次数不可直接修改"""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    code: Optional[str] = Field(None, max_length=50)
    value: Optional[Decimal] = None
    minimum_order_amount: Optional[Decimal] = Field(None, ge=0)
    maximum_discount_amount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_limit_per_user: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[CampaignStatus] = None
    is_automatic_apply: Optional[bool] = None
    is_stackable: Optional[bool] = None
    priority: Optional[int] = None
    conditions: Optional[CampaignConditions] = None
    buy_x_get_y_config: Optional[BuyXGetYConfig] = None
    target_product_ids: Optional[List[str]] = None
    target_market_ids: Optional[List[str]] = None
    target_user_ids: Optional[List[str]] = None
    target_categories: Optional[List[str]] = None

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return _normalize_code(v)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_local(v)


class CampaignSummary(BaseModel):
    """可用活动摘要，供前端展示"""

    campaign_id: str
    name: str
    description: Optional[str] = None
    code: Optional[str] = None
    discount_type: DiscountType
    target_type: DiscountTargetType
    value: Decimal
    priority: int
    is_automatic_apply: bool
    is_stackable: bool
    estimated_discount: Decimal = Field(default=Decimal("0"), description="预估折扣金额")
    free_shipping: bool = Field(default=False, description="是否免运费")
    end_date: datetime
    remaining_usage: Optional[int] = None

    @classmethod
    def from_campaign(cls, campaign: Campaign, estimated_discount: Decimal, free_shipping: bool = False) -> "CampaignSummary":
        """从Campaign模型创建摘要对象"""
        return cls(
            campaign_id=campaign.id,
            name=campaign.name,
            description=campaign.description,
            code=campaign.code,
            discount_type=campaign.discount_type,
            target_type=campaign.target_type,
            value=campaign.value,
            priority=campaign.priority,
            is_automatic_apply=campaign.is_automatic_apply,
            is_stackable=campaign.is_stackable,
            estimated_discount=estimated_discount,
            free_shipping=free_shipping,
            end_date=campaign.end_date,
            remaining_usage=campaign.remaining_usage()
        )
