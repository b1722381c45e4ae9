"""
测试配置文件 - pytest fixtures和共用配置
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promotion_engine.core.database import Base, build_engine
from promotion_engine.models.database import CampaignDB, UsageRecordDB, SystemSettingDB  # noqa: F401
from promotion_engine.models.campaign import Campaign, CampaignStatus, DiscountTargetType, DiscountType
from promotion_engine.models.order_context import OrderContext
from promotion_engine.models.settings import SettingKey
from promotion_engine.repositories.campaign_repository import CampaignRepository
from promotion_engine.services.settings_service import SettingsCache, SystemSettingsService
from promotion_engine.services.discount_application_service import DiscountApplicationService
from promotion_engine.services.campaign_admin_service import CampaignAdminService


# 固定的测试时间：2026-03-04 周三 12:00
NOW = datetime(2026, 3, 4, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_campaign() -> Callable[..., Campaign]:
    """活动工厂：默认是进行中的全局10%折扣，可覆盖任意字段"""
    counter = {"n": 0}

    def _make(**overrides: Any) -> Campaign:
        counter["n"] += 1
        data = {
            "id": f"campaign_{counter['n']:03d}",
            "name": f"测试活动{counter['n']}",
            "code": None,
            "discount_type": DiscountType.PERCENTAGE,
            "target_type": DiscountTargetType.GLOBAL,
            "value": Decimal("10"),
            "start_date": NOW - timedelta(days=1),
            "end_date": NOW + timedelta(days=30),
            "status": CampaignStatus.ACTIVE,
            "is_automatic_apply": True,
            "created_at": NOW - timedelta(days=2),
            "updated_at": NOW - timedelta(days=2),
        }
        data.update(overrides)
        return Campaign(**data)

    return _make


@pytest.fixture
def make_context() -> Callable[..., OrderContext]:
    """订单上下文工厂"""

    def _make(**overrides: Any) -> OrderContext:
        data = {
            "user_id": "user_001",
            "order_total": Decimal("1000.00"),
            "timestamp": NOW,
        }
        data.update(overrides)
        return OrderContext(**data)

    return _make


@pytest_asyncio.fixture
async def test_db_engine(tmp_path):
    """测试数据库引擎 - 每个测试一个独立的SQLite文件"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'promotion_test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_db_engine) -> async_sessionmaker:
    """测试会话工厂"""
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncSession:
    """测试数据库会话"""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def settings_service(session_maker) -> SystemSettingsService:
    """系统设置服务，约束放宽到不影响单个活动的计算结果"""
    service = SystemSettingsService(session_maker, cache=SettingsCache(ttl_seconds=600))
    await service.set_setting(SettingKey.MINIMUM_ORDER_FOR_DISCOUNT.value, 0)
    await service.set_setting(SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value, 100)
    await service.set_setting(SettingKey.MAXIMUM_SINGLE_DISCOUNT_AMOUNT.value, 1000000)
    await service.get_discount_constraints()
    return service


@pytest.fixture
def discount_service(session_maker, settings_service) -> DiscountApplicationService:
    """折扣应用服务"""
    return DiscountApplicationService(session_maker, settings_service, clock=lambda: NOW)


@pytest.fixture
def admin_service(session_maker) -> CampaignAdminService:
    """活动管理服务"""
    return CampaignAdminService(session_maker, clock=lambda: NOW)


@pytest.fixture
def save_campaign(session_maker):
    """把活动直接写入数据库"""

    async def _save(campaign: Campaign) -> Campaign:
        async with session_maker() as session:
            await CampaignRepository(session).create(campaign)
            await session.commit()
        return campaign

    return _save
