"""
折扣引擎启动入口
负责日志配置、数据库与缓存的初始化和关闭，并组装各服务
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from promotion_engine.core.config import settings
from promotion_engine.core.database import init_database, close_database, database_service
from promotion_engine.services.common_cache import settings_redis_cache
from promotion_engine.services.settings_service import SettingsCache, SystemSettingsService
from promotion_engine.services.discount_application_service import DiscountApplicationService
from promotion_engine.services.campaign_admin_service import CampaignAdminService

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None) -> None:
    """配置标准日志和structlog"""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True
    )


@dataclass
class PromotionServices:
    """已组装好的服务集合"""
    settings_service: SystemSettingsService
    discount_service: DiscountApplicationService
    admin_service: CampaignAdminService


@asynccontextmanager
async def lifespan(database_url: Optional[str] = None) -> AsyncIterator[PromotionServices]:
    """引擎生命周期管理"""
    logger.info(f"正在启动{settings.app_name}")

    try:
        await init_database(database_url)

        redis_cache = None
        if settings.settings_redis_enabled:
            await settings_redis_cache.init_redis()
            redis_cache = settings_redis_cache
            logger.info("系统设置Redis缓存初始化成功")

        session_maker = database_service.session_maker
        settings_service = SystemSettingsService(
            session_maker,
            cache=SettingsCache(settings.settings_cache_ttl_seconds),
            redis_cache=redis_cache
        )
        services = PromotionServices(
            settings_service=settings_service,
            discount_service=DiscountApplicationService(session_maker, settings_service),
            admin_service=CampaignAdminService(session_maker)
        )
        logger.info("折扣引擎启动完成")

    except Exception as e:
        logger.error(f"折扣引擎启动失败: {e}")
        raise

    try:
        yield services
    finally:
        logger.info("正在关闭折扣引擎")
        await close_database()
        await settings_redis_cache.close_redis()
        logger.info("折扣引擎关闭完成")


async def main() -> None:
    """检查数据库连接"""
    setup_logging()
    async with lifespan():
        health = await database_service.health_check()
        logger.info(f"数据库健康检查: {health['status']} - {health['message']}")


if __name__ == "__main__":
    asyncio.run(main())
