"""
折扣使用台账 - 使用记录与使用次数的事务性读写

使用次数从不缓存，所有计数都直接读数据库。
提交阶段是整个引擎唯一修改共享状态的地方：
在一个事务内锁定活动行、复核次数、CAS递增 usage_count 并写入使用记录。
"""

import uuid
from collections import defaultdict
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select, update, and_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from promotion_engine.core.exceptions import (
    CampaignNotFoundError,
    ConcurrentWriteConflictError,
    UsageLimitExceededError
)
from promotion_engine.models.usage import (
    UsageRecord,
    UsageRecordCreate,
    CampaignStatistics,
    CampaignTopUser
)
from promotion_engine.models.database.campaign_db import CampaignDB
from promotion_engine.models.database.usage_db import UsageRecordDB

logger = structlog.get_logger()


class UsageLedger:
    """折扣使用台账"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def count_for_user(self, campaign_id: str, user_id: str) -> int:
        """获取用户对指定活动的使用次数"""
        result = await self.db.execute(
            select(func.count(UsageRecordDB.id)).where(
                and_(
                    UsageRecordDB.campaign_id == campaign_id,
                    UsageRecordDB.user_id == user_id
                )
            )
        )
        return result.scalar() or 0

    async def counts_for_user(self, user_id: str, campaign_ids: List[str]) -> Dict[str, int]:
        """批量获取用户对多个活动的使用次数"""
        if not campaign_ids:
            return {}

        result = await self.db.execute(
            select(
                UsageRecordDB.campaign_id,
                func.count(UsageRecordDB.id)
            ).where(
                and_(
                    UsageRecordDB.user_id == user_id,
                    UsageRecordDB.campaign_id.in_(campaign_ids)
                )
            ).group_by(UsageRecordDB.campaign_id)
        )
        counts = {campaign_id: count for campaign_id, count in result.all()}
        return {campaign_id: counts.get(campaign_id, 0) for campaign_id in campaign_ids}

    async def count_for_campaign(self, campaign_id: str) -> int:
        """获取活动的使用记录数"""
        result = await self.db.execute(
            select(func.count(UsageRecordDB.id)).where(UsageRecordDB.campaign_id == campaign_id)
        )
        return result.scalar() or 0

    async def find_by_idempotency_key(
        self,
        idempotency_key: str,
        user_id: Optional[str] = None,
        campaign_ids: Optional[List[str]] = None
    ) -> List[UsageRecord]:
        """根据幂等键查找已提交的使用记录，幂等键按用户隔离"""
        conditions = [UsageRecordDB.idempotency_key == idempotency_key]
        if user_id is not None:
            conditions.append(UsageRecordDB.user_id == user_id)
        if campaign_ids:
            conditions.append(UsageRecordDB.campaign_id.in_(campaign_ids))

        result = await self.db.execute(
            select(UsageRecordDB).where(and_(*conditions)).order_by(UsageRecordDB.used_at, UsageRecordDB.id)
        )
        return [self.to_model(row) for row in result.scalars().all()]

    async def record_usage_atomic(
        self,
        campaign_id: str,
        record: UsageRecordCreate,
        now: Optional[datetime] = None
    ) -> UsageRecord:
        """原子地记录单个活动的一次使用"""
        if record.campaign_id != campaign_id:
            raise ValueError(f"使用记录的活动ID {record.campaign_id} 与 {campaign_id} 不一致")

        records = await self.record_usages_atomic([record], now=now)
        return records[0]

    async def record_usages_atomic(
        self,
        records: List[UsageRecordCreate],
        now: Optional[datetime] = None
    ) -> List[UsageRecord]:
        """
        在一个事务内原子地记录多个活动的使用

        每个活动按ID顺序加行锁（SELECT ... FOR UPDATE），避免多活动提交时死锁；
        锁内复核总次数和单用户次数，再以读到的 usage_count 做CAS递增。
        任何一步失败都会抛出异常并整体回滚。

        Args:
            records: 待写入的使用记录
            now: 使用时间，默认当前时间

        Returns:
            写入成功的使用记录，顺序与入参一致

        Raises:
            CampaignNotFoundError: 活动不存在
            UsageLimitExceededError: 锁内复核发现次数已用完
            ConcurrentWriteConflictError: CAS更新未命中，调用方应重新校验后重试
        """
        if not records:
            return []
        if now is None:
            now = datetime.now()

        grouped: Dict[str, List[UsageRecordCreate]] = defaultdict(list)
        for record in records:
            grouped[record.campaign_id].append(record)

        async with self.db.begin():
            for campaign_id in sorted(grouped):
                await self._reserve(campaign_id, grouped[campaign_id], now)

            db_records = [
                UsageRecordDB(
                    id=str(uuid.uuid4()),
                    campaign_id=record.campaign_id,
                    user_id=record.user_id,
                    order_id=record.order_id,
                    shopping_list_id=record.shopping_list_id,
                    discount_amount=record.discount_amount,
                    order_total=record.order_total,
                    idempotency_key=record.idempotency_key,
                    usage_metadata=record.metadata,
                    used_at=now
                )
                for record in records
            ]
            self.db.add_all(db_records)
            await self.db.flush()
            committed = [self.to_model(row) for row in db_records]

        logger.info(
            "折扣使用记录已提交",
            campaign_ids=sorted(grouped),
            usage_record_ids=[record.id for record in committed]
        )
        return committed

    async def _reserve(self, campaign_id: str, records: List[UsageRecordCreate], now: datetime) -> None:
        """锁定活动行，复核余量并CAS递增使用次数"""
        result = await self.db.execute(
            select(
                CampaignDB.usage_count,
                CampaignDB.usage_limit,
                CampaignDB.usage_limit_per_user
            ).where(CampaignDB.id == campaign_id).with_for_update()
        )
        row = result.one_or_none()
        if row is None:
            raise CampaignNotFoundError(f"折扣活动 {campaign_id} 不存在")

        usage_count = row.usage_count or 0
        needed = len(records)
        if row.usage_limit is not None and usage_count + needed > row.usage_limit:
            raise UsageLimitExceededError("折扣活动使用次数已达上限", campaign_id=campaign_id)

        if row.usage_limit_per_user is not None:
            per_user: Dict[str, int] = defaultdict(int)
            for record in records:
                per_user[record.user_id] += 1
            for user_id, pending in per_user.items():
                used = await self.count_for_user(campaign_id, user_id)
                if used + pending > row.usage_limit_per_user:
                    raise UsageLimitExceededError("您已达到该折扣的使用上限", campaign_id=campaign_id)

        cas = await self.db.execute(
            update(CampaignDB)
            .where(
                and_(
                    CampaignDB.id == campaign_id,
                    CampaignDB.usage_count == usage_count
                )
            )
            .values(usage_count=usage_count + needed, updated_at=now)
        )
        if cas.rowcount != 1:
            raise ConcurrentWriteConflictError(campaign_id)

    async def get_user_usage_history(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """获取用户折扣使用历史，返回(记录列表, 总数)"""
        total = (await self.db.execute(
            select(func.count(UsageRecordDB.id)).where(UsageRecordDB.user_id == user_id)
        )).scalar() or 0

        query = select(
            UsageRecordDB,
            CampaignDB.name,
            CampaignDB.code,
            CampaignDB.discount_type
        ).join(
            CampaignDB, UsageRecordDB.campaign_id == CampaignDB.id
        ).where(
            UsageRecordDB.user_id == user_id
        ).order_by(desc(UsageRecordDB.used_at), UsageRecordDB.id).limit(limit).offset(offset)

        result = await self.db.execute(query)
        history = [
            {
                "usage_id": row.UsageRecordDB.id,
                "campaign_id": row.UsageRecordDB.campaign_id,
                "campaign_name": row.name,
                "campaign_code": row.code,
                "discount_type": row.discount_type,
                "order_id": row.UsageRecordDB.order_id,
                "shopping_list_id": row.UsageRecordDB.shopping_list_id,
                "discount_amount": row.UsageRecordDB.discount_amount,
                "order_total": row.UsageRecordDB.order_total,
                "used_at": row.UsageRecordDB.used_at
            }
            for row in result.fetchall()
        ]
        return history, total

    async def get_campaign_statistics(self, campaign_id: str, top_n: int = 10) -> CampaignStatistics:
        """获取活动使用统计"""
        stats_row = (await self.db.execute(
            select(
                func.count(UsageRecordDB.id).label("total_usage"),
                func.sum(UsageRecordDB.discount_amount).label("total_discount"),
                func.count(func.distinct(UsageRecordDB.user_id)).label("unique_users"),
                func.avg(UsageRecordDB.order_total).label("average_order")
            ).where(UsageRecordDB.campaign_id == campaign_id)
        )).one()

        top_rows = (await self.db.execute(
            select(
                UsageRecordDB.user_id,
                func.count(UsageRecordDB.id).label("usage_count"),
                func.sum(UsageRecordDB.discount_amount).label("total_discount")
            ).where(
                UsageRecordDB.campaign_id == campaign_id
            ).group_by(
                UsageRecordDB.user_id
            ).order_by(
                desc("usage_count"), UsageRecordDB.user_id
            ).limit(top_n)
        )).fetchall()

        return CampaignStatistics(
            campaign_id=campaign_id,
            total_usage=stats_row.total_usage or 0,
            total_discount_given=_to_money(stats_row.total_discount),
            unique_users=stats_row.unique_users or 0,
            average_order_value=_to_money(stats_row.average_order),
            top_users=[
                CampaignTopUser(
                    user_id=row.user_id,
                    usage_count=row.usage_count,
                    total_discount=_to_money(row.total_discount)
                )
                for row in top_rows
            ]
        )

    def to_model(self, db_record: UsageRecordDB) -> UsageRecord:
        """转换为Pydantic模型"""
        return UsageRecord(
            id=db_record.id,
            campaign_id=db_record.campaign_id,
            user_id=db_record.user_id,
            order_id=db_record.order_id,
            shopping_list_id=db_record.shopping_list_id,
            discount_amount=db_record.discount_amount,
            order_total=db_record.order_total,
            idempotency_key=db_record.idempotency_key,
            metadata=db_record.usage_metadata or {},
            used_at=db_record.used_at
        )


def _to_money(value: Any) -> Decimal:
    """聚合结果统一为两位小数的Decimal"""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(Decimal("0.01"))
