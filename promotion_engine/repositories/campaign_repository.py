"""
折扣活动数据库操作层
"""

import logging
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update, delete, and_, or_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from promotion_engine.models.campaign import (
    Campaign,
    CampaignConditions,
    BuyXGetYConfig,
    CampaignStatus,
    DiscountTargetType,
    DiscountType
)
from promotion_engine.models.database.campaign_db import CampaignDB

logger = logging.getLogger(__name__)

# 目标类型与目标ID列表字段的对应关系
TARGET_ID_FIELDS = {
    DiscountTargetType.MARKET: "target_market_ids",
    DiscountTargetType.PRODUCT: "target_product_ids",
    DiscountTargetType.CATEGORY: "target_categories",
    DiscountTargetType.USER: "target_user_ids",
}


class CampaignRepository:
    """折扣活动数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_db_by_id(self, campaign_id: str) -> Optional[CampaignDB]:
        """根据活动ID获取数据库记录"""
        result = await self.db.execute(
            select(CampaignDB).where(CampaignDB.id == campaign_id)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, campaign_id: str) -> Optional[Campaign]:
        """根据活动ID获取活动"""
        db_campaign = await self.get_db_by_id(campaign_id)
        return self.to_model(db_campaign) if db_campaign else None

    async def get_by_code(self, code: str) -> Optional[Campaign]:
        """根据优惠码获取活动，大小写不敏感"""
        normalized = (code or "").strip().upper()
        if not normalized:
            return None

        result = await self.db.execute(
            select(CampaignDB).where(CampaignDB.code == normalized)
        )
        db_campaign = result.scalar_one_or_none()
        return self.to_model(db_campaign) if db_campaign else None

    async def code_exists(self, code: str, exclude_id: Optional[str] = None) -> bool:
        """检查优惠码是否已被其他活动占用"""
        conditions = [CampaignDB.code == code.strip().upper()]
        if exclude_id:
            conditions.append(CampaignDB.id != exclude_id)

        result = await self.db.execute(
            select(func.count(CampaignDB.id)).where(and_(*conditions))
        )
        return (result.scalar() or 0) > 0

    async def find_active_candidates(
        self,
        target_type: Optional[DiscountTargetType] = None,
        target_id: Optional[str] = None,
        current_time: Optional[datetime] = None,
        automatic_only: bool = False
    ) -> List[Campaign]:
        """
        获取当前处于运营状态的候选活动

        只做粗筛（状态、有效期、总次数），目标匹配和附加条件由资格判断负责。

        Args:
            target_type: 只返回该目标类型的活动
            target_id: 只返回目标列表包含该ID的活动（需同时指定target_type）
            current_time: 判断时间，默认当前时间
            automatic_only: 只返回自动应用的活动

        Returns:
            按优先级、折扣值降序排列的活动列表
        """
        if current_time is None:
            current_time = datetime.now()

        conditions = [
            CampaignDB.status == CampaignStatus.ACTIVE.value,
            CampaignDB.start_date <= current_time,
            CampaignDB.end_date >= current_time,
            or_(
                CampaignDB.usage_limit.is_(None),
                CampaignDB.usage_count < CampaignDB.usage_limit
            )
        ]
        if target_type is not None:
            conditions.append(CampaignDB.target_type == DiscountTargetType(target_type).value)
        if automatic_only:
            conditions.append(CampaignDB.is_automatic_apply.is_(True))

        query = select(CampaignDB).where(and_(*conditions)).order_by(
            desc(CampaignDB.priority), desc(CampaignDB.value), CampaignDB.id
        )

        result = await self.db.execute(query)
        campaigns = [self.to_model(row) for row in result.scalars().all()]

        # JSON列的包含查询不可移植，目标ID在内存中过滤
        if target_id is not None and target_type is not None:
            field = TARGET_ID_FIELDS.get(DiscountTargetType(target_type))
            if field:
                campaigns = [c for c in campaigns if target_id in getattr(c, field)]

        return campaigns

    async def list_campaigns(
        self,
        status: Optional[CampaignStatus] = None,
        discount_type: Optional[DiscountType] = None,
        target_type: Optional[DiscountTargetType] = None,
        is_active: Optional[bool] = None,
        current_time: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[Campaign], int]:
        """分页查询活动，返回(活动列表, 总数)"""
        if current_time is None:
            current_time = datetime.now()

        conditions = []
        if status is not None:
            conditions.append(CampaignDB.status == CampaignStatus(status).value)
        if discount_type is not None:
            conditions.append(CampaignDB.discount_type == DiscountType(discount_type).value)
        if target_type is not None:
            conditions.append(CampaignDB.target_type == DiscountTargetType(target_type).value)
        if is_active:
            conditions.extend([
                CampaignDB.status == CampaignStatus.ACTIVE.value,
                CampaignDB.start_date <= current_time,
                CampaignDB.end_date >= current_time
            ])

        count_query = select(func.count(CampaignDB.id))
        query = select(CampaignDB).order_by(desc(CampaignDB.created_at), CampaignDB.id)
        if conditions:
            count_query = count_query.where(and_(*conditions))
            query = query.where(and_(*conditions))
        if limit is not None:
            query = query.limit(limit).offset(offset)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(query)
        return [self.to_model(row) for row in result.scalars().all()], total

    async def create(self, campaign: Campaign) -> Campaign:
        """写入新活动，调用方负责提交事务"""
        db_campaign = CampaignDB(**self.to_db_values(campaign))
        self.db.add(db_campaign)
        await self.db.flush()
        logger.info(f"折扣活动创建成功: {campaign.id}")
        return campaign

    async def update_fields(self, campaign_id: str, values: Dict[str, Any]) -> bool:
        """按字段更新活动，不允许修改使用次数"""
        values = {k: v for k, v in values.items() if k not in ("id", "usage_count", "created_at")}
        values["updated_at"] = datetime.now()

        result = await self.db.execute(
            update(CampaignDB)
            .where(CampaignDB.id == campaign_id)
            .values(**values)
        )
        return result.rowcount > 0

    async def delete(self, campaign_id: str) -> bool:
        """物理删除活动，仅用于从未被使用过的活动"""
        result = await self.db.execute(
            delete(CampaignDB).where(CampaignDB.id == campaign_id)
        )
        return result.rowcount > 0

    def to_db_values(self, campaign: Campaign) -> Dict[str, Any]:
        """Pydantic模型转换为数据库字段"""
        return {
            "id": campaign.id,
            "name": campaign.name,
            "description": campaign.description,
            "code": campaign.code,
            "discount_type": campaign.discount_type.value,
            "target_type": campaign.target_type.value,
            "value": campaign.value,
            "minimum_order_amount": campaign.minimum_order_amount,
            "maximum_discount_amount": campaign.maximum_discount_amount,
            "usage_limit": campaign.usage_limit,
            "usage_limit_per_user": campaign.usage_limit_per_user,
            "usage_count": campaign.usage_count,
            "start_date": campaign.start_date,
            "end_date": campaign.end_date,
            "status": campaign.status.value,
            "is_automatic_apply": campaign.is_automatic_apply,
            "is_stackable": campaign.is_stackable,
            "priority": campaign.priority,
            "conditions": self.conditions_to_json(campaign.conditions),
            "buy_x_get_y_config": campaign.buy_x_get_y_config.model_dump() if campaign.buy_x_get_y_config else None,
            "target_product_ids": campaign.target_product_ids,
            "target_market_ids": campaign.target_market_ids,
            "target_user_ids": campaign.target_user_ids,
            "target_categories": campaign.target_categories,
            "created_by": campaign.created_by,
            "created_at": campaign.created_at,
            "updated_at": campaign.updated_at
        }

    @staticmethod
    def conditions_to_json(conditions: CampaignConditions) -> Dict[str, Any]:
        """附加条件序列化，星期集合转为有序列表"""
        data = conditions.model_dump(mode="json", exclude_none=True)
        if "day_of_week" in data:
            data["day_of_week"] = sorted(data["day_of_week"])
        return data

    def to_model(self, db_campaign: CampaignDB) -> Campaign:
        """转换为Pydantic模型"""
        return Campaign(
            id=db_campaign.id,
            name=db_campaign.name,
            description=db_campaign.description,
            code=db_campaign.code,
            discount_type=db_campaign.discount_type,
            target_type=db_campaign.target_type,
            value=Decimal(str(db_campaign.value)),
            minimum_order_amount=db_campaign.minimum_order_amount,
            maximum_discount_amount=db_campaign.maximum_discount_amount,
            usage_limit=db_campaign.usage_limit,
            usage_limit_per_user=db_campaign.usage_limit_per_user,
            usage_count=db_campaign.usage_count or 0,
            start_date=db_campaign.start_date,
            end_date=db_campaign.end_date,
            status=db_campaign.status,
            is_automatic_apply=bool(db_campaign.is_automatic_apply),
            is_stackable=bool(db_campaign.is_stackable),
            priority=db_campaign.priority or 0,
            conditions=CampaignConditions(**(db_campaign.conditions or {})),
            buy_x_get_y_config=BuyXGetYConfig(**db_campaign.buy_x_get_y_config) if db_campaign.buy_x_get_y_config else None,
            target_product_ids=db_campaign.target_product_ids or [],
            target_market_ids=db_campaign.target_market_ids or [],
            target_user_ids=db_campaign.target_user_ids or [],
            target_categories=db_campaign.target_categories or [],
            created_by=db_campaign.created_by,
            created_at=db_campaign.created_at or datetime.now(),
            updated_at=db_campaign.updated_at or datetime.now()
        )
