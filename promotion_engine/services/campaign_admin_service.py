"""
折扣活动管理服务
管理端的活动增删改查、使用历史与统计；业务校验失败直接抛出业务异常
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from promotion_engine.core.exceptions import (
    CampaignNotFoundError,
    CampaignValidationError,
    DuplicateCampaignCodeError
)
from promotion_engine.models.campaign import (
    Campaign,
    CampaignCreate,
    CampaignStatus,
    CampaignUpdate,
    DiscountTargetType,
    DiscountType,
    validate_campaign
)
from promotion_engine.models.usage import CampaignStatistics
from promotion_engine.repositories.campaign_repository import CampaignRepository
from promotion_engine.repositories.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class CampaignAdminService:
    """折扣活动管理服务"""

    def __init__(self, session_maker: async_sessionmaker, clock: Callable[[], datetime] = datetime.now):
        self.session_maker = session_maker
        self.clock = clock

    async def create_campaign(self, campaign_create: CampaignCreate) -> Campaign:
        """创建活动：先做业务校验和优惠码唯一性检查，再写入"""
        now = self.clock()
        campaign = Campaign(
            id=str(uuid.uuid4()),
            usage_count=0,
            created_at=now,
            updated_at=now,
            **campaign_create.model_dump()
        )

        errors = validate_campaign(campaign)
        if errors:
            raise CampaignValidationError(errors)

        async with self.session_maker() as session:
            repo = CampaignRepository(session)
            if campaign.code and await repo.code_exists(campaign.code):
                raise DuplicateCampaignCodeError(campaign.code)

            await repo.create(campaign)
            await session.commit()

        logger.info(f"创建折扣活动: {campaign.id} ({campaign.name})")
        return campaign

    async def get_campaign(self, campaign_id: str) -> Campaign:
        """获取活动详情"""
        async with self.session_maker() as session:
            campaign = await CampaignRepository(session).get_by_id(campaign_id)

        if campaign is None:
            raise CampaignNotFoundError()
        return campaign

    async def update_campaign(self, campaign_id: str, campaign_update: CampaignUpdate) -> Campaign:
        """更新活动：合并后重新校验，使用次数不可修改"""
        changes = campaign_update.model_dump(exclude_unset=True)

        async with self.session_maker() as session:
            repo = CampaignRepository(session)
            current = await repo.get_by_id(campaign_id)
            if current is None:
                raise CampaignNotFoundError()

            merged = Campaign(**{**current.model_dump(), **changes})
            errors = validate_campaign(merged)
            if errors:
                raise CampaignValidationError(errors)

            if "code" in changes and merged.code and merged.code != current.code:
                if await repo.code_exists(merged.code, exclude_id=campaign_id):
                    raise DuplicateCampaignCodeError(merged.code)

            values = repo.to_db_values(merged)
            await repo.update_fields(campaign_id, {key: values[key] for key in changes})
            await session.commit()

            updated = await repo.get_by_id(campaign_id)

        logger.info(f"更新折扣活动: {campaign_id}, 字段: {sorted(changes)}")
        return updated

    async def update_status(self, campaign_id: str, status: CampaignStatus) -> Campaign:
        """修改活动状态"""
        async with self.session_maker() as session:
            repo = CampaignRepository(session)
            if not await repo.update_fields(campaign_id, {"status": CampaignStatus(status).value}):
                raise CampaignNotFoundError()
            await session.commit()
            updated = await repo.get_by_id(campaign_id)

        logger.info(f"折扣活动 {campaign_id} 状态变更为 {CampaignStatus(status).value}")
        return updated

    async def delete_campaign(self, campaign_id: str) -> str:
        """
        删除活动

        已有使用记录的活动只做软删除（状态改为已取消），否则物理删除。

        Returns:
            "cancelled" 或 "deleted"
        """
        async with self.session_maker() as session:
            repo = CampaignRepository(session)
            if await repo.get_db_by_id(campaign_id) is None:
                raise CampaignNotFoundError()

            if await UsageLedger(session).count_for_campaign(campaign_id) > 0:
                await repo.update_fields(campaign_id, {"status": CampaignStatus.CANCELLED.value})
                outcome = "cancelled"
            else:
                await repo.delete(campaign_id)
                outcome = "deleted"
            await session.commit()

        logger.info(f"删除折扣活动 {campaign_id}: {outcome}")
        return outcome

    async def list_campaigns(
        self,
        page: Optional[int] = None,
        size: Optional[int] = None,
        status: Optional[CampaignStatus] = None,
        discount_type: Optional[DiscountType] = None,
        target_type: Optional[DiscountTargetType] = None,
        is_active: Optional[bool] = None
    ) -> Dict[str, Any]:
        """分页查询活动，未传分页参数时返回全部"""
        limit = size if page and size else None
        offset = (page - 1) * size if page and size else 0

        async with self.session_maker() as session:
            campaigns, total = await CampaignRepository(session).list_campaigns(
                status=status,
                discount_type=discount_type,
                target_type=target_type,
                is_active=is_active,
                current_time=self.clock(),
                limit=limit,
                offset=offset
            )

        result: Dict[str, Any] = {"campaigns": campaigns}
        if limit is not None:
            result["pagination"] = {
                "page": page,
                "size": size,
                "total": total,
                "pages": math.ceil(total / size)
            }
        return result

    async def get_user_usage_history(self, user_id: str, page: int = 1, size: int = 20) -> Dict[str, Any]:
        """获取用户折扣使用历史"""
        async with self.session_maker() as session:
            history, total = await UsageLedger(session).get_user_usage_history(
                user_id, limit=size, offset=(page - 1) * size
            )

        return {
            "usages": history,
            "pagination": {
                "page": page,
                "size": size,
                "total": total,
                "pages": math.ceil(total / size) if size else 0
            }
        }

    async def get_campaign_statistics(self, campaign_id: str) -> CampaignStatistics:
        """获取活动使用统计"""
        async with self.session_maker() as session:
            if await CampaignRepository(session).get_db_by_id(campaign_id) is None:
                raise CampaignNotFoundError()
            return await UsageLedger(session).get_campaign_statistics(campaign_id)
