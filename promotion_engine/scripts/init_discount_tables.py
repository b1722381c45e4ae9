"""
折扣引擎数据库表初始化脚本

运行方式:
python -m promotion_engine.scripts.init_discount_tables
"""

import asyncio
import logging

from promotion_engine.core.database import (
    init_database,
    close_database,
    create_all_tables,
    database_service
)
from promotion_engine.main import setup_logging
from promotion_engine.services.settings_service import SettingsCache, SystemSettingsService

logger = logging.getLogger(__name__)


async def init_discount_tables() -> None:
    """创建折扣相关数据表并写入默认系统设置"""
    try:
        await init_database()

        logger.info("开始创建折扣数据表...")
        await create_all_tables()
        logger.info("折扣数据表创建成功")

        settings_service = SystemSettingsService(database_service.session_maker, SettingsCache())
        created = await settings_service.initialize_default_settings()
        logger.info(f"默认系统设置写入完成，新增 {created} 项")

    except Exception as e:
        logger.error(f"初始化折扣数据表失败: {e}")
        raise
    finally:
        await close_database()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_discount_tables())
