"""
折扣使用记录模型
"""

from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class UsageRecord(BaseModel):
    """折扣使用记录，创建后不可修改"""

    id: str = Field(..., description="使用记录ID")
    campaign_id: str = Field(..., description="活动ID")
    user_id: str = Field(..., description="用户ID")
    order_id: Optional[str] = Field(None, description="关联订单ID")
    shopping_list_id: Optional[str] = Field(None, description="关联购物清单ID")
    discount_amount: Decimal = Field(..., ge=0, description="实际折扣金额")
    order_total: Decimal = Field(..., ge=0, description="使用时订单金额")
    idempotency_key: Optional[str] = Field(None, description="调用方幂等键")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加信息")
    used_at: datetime = Field(default_factory=datetime.now, description="使用时间")


class UsageRecordCreate(BaseModel):
    """待写入的使用记录"""

    campaign_id: str
    user_id: str
    order_id: Optional[str] = None
    shopping_list_id: Optional[str] = None
    discount_amount: Decimal = Field(..., ge=0)
    order_total: Decimal = Field(..., ge=0)
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CampaignTopUser(BaseModel):
    """活动统计中的高频用户"""

    user_id: str
    usage_count: int
    total_discount: Decimal


class CampaignStatistics(BaseModel):
    """活动使用统计"""

    campaign_id: str
    total_usage: int = 0
    total_discount_given: Decimal = Decimal("0")
    unique_users: int = 0
    average_order_value: Decimal = Decimal("0")
    top_users: List[CampaignTopUser] = Field(default_factory=list)
