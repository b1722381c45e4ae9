"""
系统设置服务
两级缓存读取系统设置：进程内TTL缓存 -> Redis(可选) -> 数据库 -> 默认值
"""

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from promotion_engine.core.config import settings
from promotion_engine.config.default_settings import get_default_settings, get_default_value
from promotion_engine.models.settings import DiscountConstraints, SettingKey, SettingValue
from promotion_engine.repositories.settings_repository import SettingsRepository
from promotion_engine.services.common_cache import SimpleCache

logger = logging.getLogger(__name__)

_MISSING = object()


class SettingsCache:
    """进程内TTL缓存，时钟可注入"""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.settings_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self.clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SystemSettingsService:
    """系统设置服务"""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        cache: Optional[SettingsCache] = None,
        redis_cache: Optional[SimpleCache] = None
    ):
        self.session_maker = session_maker
        self.cache = cache or SettingsCache()
        self.redis_cache = redis_cache
        self.cache_ttl = int(self.cache.ttl_seconds)

    async def get_setting(self, key: str) -> Any:
        """获取单个设置值，数据库中不存在时返回默认值"""
        values = await self.get_settings([key])
        return values.get(key)

    async def get_settings(self, keys: List[str]) -> Dict[str, Any]:
        """批量获取设置值，未命中缓存的键一次性查询数据库"""
        result: Dict[str, Any] = {}
        missing: List[str] = []

        for key in keys:
            cached = self.cache.get(key, _MISSING)
            if cached is not _MISSING:
                result[key] = cached
            else:
                missing.append(key)

        if missing and self.redis_cache:
            still_missing = []
            for key in missing:
                cached = await self.redis_cache.get(key)
                if cached is not None:
                    result[key] = cached
                    self.cache.set(key, cached)
                else:
                    still_missing.append(key)
            missing = still_missing

        if missing:
            async with self.session_maker() as session:
                stored = await SettingsRepository(session).get_many(missing)

            for key in missing:
                if key in stored:
                    value = stored[key].value
                    self.cache.set(key, value)
                    if self.redis_cache:
                        await self.redis_cache.set(key, value, ttl=self.cache_ttl)
                else:
                    value = get_default_value(key)
                    if value is not None:
                        logger.warning(f"系统设置 {key} 不存在，使用默认值: {value}")
                result[key] = value

        return result

    async def get_all_settings(self) -> Dict[str, SettingValue]:
        """
        获取全部设置信封

        数据库中的设置覆盖同名默认设置，管理端展示用，不经过缓存。
        """
        async with self.session_maker() as session:
            stored = await SettingsRepository(session).list_all()

        merged = get_default_settings()
        merged.update(stored)
        return dict(sorted(merged.items()))

    async def get_settings_by_category(self, category: str) -> Dict[str, SettingValue]:
        """按分类获取设置信封"""
        all_settings = await self.get_all_settings()
        return {key: setting for key, setting in all_settings.items() if setting.category == category}

    async def get_public_settings(self) -> Dict[str, Any]:
        """获取对前端公开的设置值"""
        all_settings = await self.get_all_settings()
        return {key: setting.value for key, setting in all_settings.items() if setting.is_public}

    async def set_setting(
        self,
        key: str,
        value: Any,
        description: Optional[str] = None,
        category: Optional[str] = None,
        is_public: Optional[bool] = None,
        validation: Optional[Dict[str, Any]] = None
    ) -> SettingValue:
        """写入设置并失效缓存"""
        async with self.session_maker() as session:
            repo = SettingsRepository(session)
            existing = await repo.get(key)
            default = get_default_settings().get(key)
            base = existing or default

            envelope = SettingValue(
                value=value,
                type=SettingValue.infer_type(value),
                description=description if description is not None else (base.description if base else None),
                category=category if category is not None else (base.category if base else "general"),
                is_public=is_public if is_public is not None else (base.is_public if base else False),
                validation=validation if validation is not None else (base.validation if base else {})
            )
            self.validate_value(key, envelope)

            await repo.upsert(key, envelope)
            await session.commit()

        await self._invalidate(key)
        return envelope

    @staticmethod
    def validate_value(key: str, envelope: SettingValue) -> None:
        """按信封中的约束校验取值"""
        rules = envelope.validation or {}
        value = envelope.value

        if "enum" in rules and value not in rules["enum"]:
            raise ValueError(f"设置 {key} 的取值必须是 {rules['enum']} 之一")

        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            if "min" in rules and value < rules["min"]:
                raise ValueError(f"设置 {key} 的取值不能小于 {rules['min']}")
            if "max" in rules and value > rules["max"]:
                raise ValueError(f"设置 {key} 的取值不能大于 {rules['max']}")

    async def initialize_default_settings(self) -> int:
        """写入缺失的默认设置，已存在的不覆盖，返回新写入的数量"""
        created = 0
        async with self.session_maker() as session:
            repo = SettingsRepository(session)
            for key, envelope in get_default_settings().items():
                if await repo.exists(key):
                    continue
                await repo.upsert(key, envelope)
                created += 1
            await session.commit()

        logger.info(f"默认系统设置初始化完成，新增 {created} 项")
        return created

    async def clear_cache(self) -> None:
        """清空所有缓存"""
        self.cache.clear()
        if self.redis_cache:
            await self.redis_cache.delete_pattern("*")

    async def _invalidate(self, key: str) -> None:
        self.cache.invalidate(key)
        if self.redis_cache:
            await self.redis_cache.delete(key)

    async def get_discount_constraints(self) -> DiscountConstraints:
        """获取系统级折扣约束快照"""
        keys = [
            SettingKey.MINIMUM_ORDER_FOR_DISCOUNT.value,
            SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value,
            SettingKey.MAXIMUM_SINGLE_DISCOUNT_AMOUNT.value
        ]
        values = await self.get_settings(keys)

        def as_decimal(key: str, fallback: float) -> Decimal:
            value = values.get(key)
            return Decimal(str(fallback if value is None else value))

        return DiscountConstraints(
            minimum_order_for_discount=as_decimal(keys[0], settings.default_minimum_order_for_discount),
            maximum_discount_percentage=as_decimal(keys[1], settings.default_maximum_discount_percentage),
            maximum_single_discount_amount=as_decimal(keys[2], settings.default_maximum_single_discount_amount)
        )
