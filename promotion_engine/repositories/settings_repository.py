"""
系统设置数据库操作层
"""

import logging
from typing import Dict, List, Optional
from datetime import datetime

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from promotion_engine.models.settings import SettingValue
from promotion_engine.models.database.settings_db import SystemSettingDB

logger = logging.getLogger(__name__)


class SettingsRepository:
    """系统设置数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Optional[SettingValue]:
        """获取单个启用中的设置"""
        result = await self.db.execute(
            select(SystemSettingDB).where(
                and_(
                    SystemSettingDB.key == key,
                    SystemSettingDB.is_active.is_(True)
                )
            )
        )
        db_setting = result.scalar_one_or_none()
        return self.to_model(db_setting) if db_setting else None

    async def get_many(self, keys: List[str]) -> Dict[str, SettingValue]:
        """批量获取启用中的设置"""
        if not keys:
            return {}

        result = await self.db.execute(
            select(SystemSettingDB).where(
                and_(
                    SystemSettingDB.key.in_(keys),
                    SystemSettingDB.is_active.is_(True)
                )
            )
        )
        return {row.key: self.to_model(row) for row in result.scalars().all()}

    async def list_all(self) -> Dict[str, SettingValue]:
        """获取全部启用中的设置"""
        result = await self.db.execute(
            select(SystemSettingDB)
            .where(SystemSettingDB.is_active.is_(True))
            .order_by(SystemSettingDB.key)
        )
        return {row.key: self.to_model(row) for row in result.scalars().all()}

    async def exists(self, key: str) -> bool:
        """设置键是否存在（不区分启用状态）"""
        result = await self.db.execute(
            select(SystemSettingDB.key).where(SystemSettingDB.key == key)
        )
        return result.scalar_one_or_none() is not None

    async def upsert(self, key: str, setting: SettingValue) -> None:
        """写入或覆盖设置，调用方负责提交事务"""
        result = await self.db.execute(
            select(SystemSettingDB).where(SystemSettingDB.key == key)
        )
        db_setting = result.scalar_one_or_none()
        envelope = setting.model_dump(mode="json")

        if db_setting:
            db_setting.value = envelope
            db_setting.is_active = True
            db_setting.updated_at = datetime.now()
        else:
            self.db.add(SystemSettingDB(key=key, value=envelope, is_active=True))

        await self.db.flush()
        logger.info(f"系统设置已更新: {key}")

    def to_model(self, db_setting: SystemSettingDB) -> SettingValue:
        """转换为Pydantic模型"""
        return SettingValue(**db_setting.value)
