"""
DiscountApplicationService折扣应用流程测试 - 使用SQLite临时数据库
"""

import asyncio
import pytest
from datetime import timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from sqlalchemy.exc import IntegrityError

from promotion_engine.core.exceptions import ConcurrentWriteConflictError
from promotion_engine.models.campaign import (
    BuyXGetYConfig,
    CampaignStatus,
    DiscountTargetType,
    DiscountType
)
from promotion_engine.models.discount_result import ApplicationState, PricedCampaign, RejectionKind, WarningKind
from promotion_engine.models.settings import SettingKey
from promotion_engine.repositories.campaign_repository import CampaignRepository
from promotion_engine.repositories.usage_ledger import UsageLedger
from promotion_engine.services.discount_application_service import (
    DiscountApplicationService,
    allocate_clamped_total
)


@pytest.mark.asyncio
class TestDiscountApplicationService:
    """折扣应用流程测试类"""

    async def test_apply_discount_commits_usage(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试应用折扣成功并写入使用记录"""
        campaign = await save_campaign(make_campaign(value=Decimal("10"), usage_limit=5))

        result = await discount_service.apply_discount(campaign.id, make_context(), order_id="order_1")

        assert result.success is True
        assert result.state == ApplicationState.COMMITTED
        assert result.amount == Decimal("100.00")
        assert result.final_total == Decimal("900.00")
        assert result.usage_record_id is not None
        assert result.applied[0].campaign_id == campaign.id

        async with session_maker() as session:
            assert (await CampaignRepository(session).get_by_id(campaign.id)).usage_count == 1
            assert await UsageLedger(session).count_for_user(campaign.id, "user_001") == 1

    async def test_apply_unknown_campaign(self, discount_service, make_context):
        """测试活动不存在"""
        result = await discount_service.apply_discount("missing", make_context())
        assert result.success is False
        assert result.state == ApplicationState.REJECTED
        assert result.rejection.kind == RejectionKind.NOT_FOUND

    async def test_per_user_limit_sequential(self, discount_service, save_campaign, make_campaign, make_context):
        """测试单用户限用一次：第二次调用被拒绝"""
        campaign = await save_campaign(make_campaign(usage_limit_per_user=1))

        first = await discount_service.apply_discount(campaign.id, make_context())
        second = await discount_service.apply_discount(campaign.id, make_context())

        assert first.success is True
        assert second.success is False
        assert second.rejection.kind == RejectionKind.USAGE_LIMIT_EXCEEDED

    async def test_usage_limit_under_concurrency(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试总次数为1时50个用户并发应用，只有1个成功"""
        campaign = await save_campaign(make_campaign(usage_limit=1))

        results = await asyncio.gather(*[
            discount_service.apply_discount(campaign.id, make_context(user_id=f"user_{index:02d}"))
            for index in range(50)
        ])

        successes = [r for r in results if r.success]
        rejections = [r for r in results if not r.success]
        assert len(successes) == 1
        assert len(rejections) == 49
        assert all(r.rejection.kind == RejectionKind.USAGE_LIMIT_EXCEEDED for r in rejections)

        async with session_maker() as session:
            assert (await CampaignRepository(session).get_by_id(campaign.id)).usage_count == 1
            assert await UsageLedger(session).count_for_campaign(campaign.id) == 1

    async def test_validate_code_matches_apply(self, discount_service, save_campaign, make_campaign, make_context):
        """测试验证优惠码与实际应用的金额一致"""
        campaign = await save_campaign(make_campaign(
            code="SAVE15", value=Decimal("15"), maximum_discount_amount=Decimal("120"), is_automatic_apply=False
        ))
        ctx = make_context(order_total=Decimal("1234.56"))

        validation = await discount_service.validate_code("save15", ctx)
        applied = await discount_service.apply_discount_code("SAVE15", ctx)

        assert validation.valid is True
        assert validation.campaign.id == campaign.id
        assert validation.amount == Decimal("120.00")
        assert applied.amount == validation.amount

    async def test_validate_unknown_code(self, discount_service, make_context):
        """测试优惠码不存在"""
        validation = await discount_service.validate_code("NOPE", make_context())
        assert validation.valid is False
        assert validation.rejection.kind == RejectionKind.NOT_FOUND

        applied = await discount_service.apply_discount_code("NOPE", make_context())
        assert applied.rejection.kind == RejectionKind.NOT_FOUND

    async def test_expired_campaign_rejected(self, discount_service, save_campaign, make_campaign, make_context):
        """测试过期状态的活动"""
        await save_campaign(make_campaign(code="OLD", status=CampaignStatus.EXPIRED))

        validation = await discount_service.validate_code("OLD", make_context())
        assert validation.rejection.kind == RejectionKind.EXPIRED

    async def test_zero_amount_is_not_eligible(self, discount_service, save_campaign, make_campaign, make_context):
        """测试计算金额为0时视为不可用"""
        campaign = await save_campaign(make_campaign(
            discount_type=DiscountType.BUY_X_GET_Y,
            value=Decimal("100"),
            buy_x_get_y_config=BuyXGetYConfig(buy_quantity=2, get_quantity=1)
        ))

        result = await discount_service.apply_discount(campaign.id, make_context())
        assert result.rejection.kind == RejectionKind.NOT_ELIGIBLE

    async def test_free_shipping_applies_without_amount(self, discount_service, save_campaign, make_campaign, make_context):
        """测试免运费活动金额为0但可以应用"""
        campaign = await save_campaign(make_campaign(discount_type=DiscountType.FREE_SHIPPING, value=Decimal("0")))

        result = await discount_service.apply_discount(campaign.id, make_context())
        assert result.success is True
        assert result.amount == Decimal("0")
        assert result.free_shipping is True

    async def test_constraint_clamp_and_minimum(self, discount_service, settings_service, save_campaign, make_campaign, make_context):
        """测试系统约束：超过20%被削减并告警，低于最低金额被拒绝"""
        await settings_service.set_setting(SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value, 20)
        await settings_service.set_setting(SettingKey.MINIMUM_ORDER_FOR_DISCOUNT.value, 100)
        campaign = await save_campaign(make_campaign(discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("300")))

        result = await discount_service.apply_discount(campaign.id, make_context(order_total=Decimal("1000")))
        assert result.success is True
        assert result.amount == Decimal("200.00")
        assert result.warnings[0].kind == WarningKind.CONSTRAINT_CLAMPED

        result = await discount_service.apply_discount(campaign.id, make_context(order_total=Decimal("50")))
        assert result.rejection.kind == RejectionKind.BELOW_MINIMUM_ORDER

    async def test_preview_discount(self, discount_service, save_campaign, make_campaign, make_context):
        """测试预览结果并且不写入使用记录"""
        campaign = await save_campaign(make_campaign(value=Decimal("12.5"), usage_limit=1))

        preview = await discount_service.preview_discount(campaign.id, make_context(order_total=Decimal("333.33")))

        assert preview.eligible is True
        assert preview.amount == Decimal("41.67")
        assert preview.final_total == Decimal("291.66")
        assert preview.effective_percentage == Decimal("12.50")

        # 预览不消耗次数
        again = await discount_service.preview_discount(campaign.id, make_context())
        assert again.eligible is True

    async def test_preview_unknown_and_ineligible(self, discount_service, save_campaign, make_campaign, make_context):
        """测试预览不可用的活动"""
        campaign = await save_campaign(make_campaign(target_type=DiscountTargetType.USER, target_user_ids=["vip"]))

        missing = await discount_service.preview_discount("missing", make_context())
        ineligible = await discount_service.preview_discount(campaign.id, make_context())

        assert missing.rejection.kind == RejectionKind.NOT_FOUND
        assert ineligible.eligible is False
        assert ineligible.final_total == Decimal("1000.00")

    async def test_idempotent_replay(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试同一幂等键重复调用返回既有结果"""
        campaign = await save_campaign(make_campaign(usage_limit=10))

        first = await discount_service.apply_discount(campaign.id, make_context(), idempotency_key="req-1")
        second = await discount_service.apply_discount(campaign.id, make_context(), idempotency_key="req-1")

        assert first.success is True and first.replayed is False
        assert second.success is True and second.replayed is True
        assert second.usage_record_id == first.usage_record_id
        assert second.amount == first.amount

        async with session_maker() as session:
            assert (await CampaignRepository(session).get_by_id(campaign.id)).usage_count == 1

    async def test_list_eligible(self, discount_service, save_campaign, make_campaign):
        """测试列出可用活动，按叠加排序规则排列"""
        await save_campaign(make_campaign(id="low", priority=1, value=Decimal("5")))
        await save_campaign(make_campaign(id="high", priority=5, value=Decimal("10")))
        await save_campaign(make_campaign(id="market", target_type=DiscountTargetType.MARKET, target_market_ids=["m9"]))
        await save_campaign(make_campaign(id="first", target_type=DiscountTargetType.FIRST_ORDER))

        summaries = await discount_service.list_eligible("user_001", Decimal("200"), market_id="m1")
        assert [s.campaign_id for s in summaries] == ["high", "low"]
        assert summaries[0].estimated_discount == Decimal("20.00")

        summaries = await discount_service.list_eligible("user_001", Decimal("200"), market_id="m9", is_first_order=True)
        assert {s.campaign_id for s in summaries} == {"high", "low", "market", "first"}

    async def test_resolve_and_apply_automatic(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试自动活动叠加：A(5,可叠加,100) B(3,可叠加,50) C(4,不可叠加,200) -> 只选A"""
        await save_campaign(make_campaign(id="A", priority=5, is_stackable=True, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("100")))
        await save_campaign(make_campaign(id="B", priority=3, is_stackable=True, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("50")))
        await save_campaign(make_campaign(id="C", priority=4, is_stackable=False, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("200")))

        plan = await discount_service.resolve_automatic_discounts(make_context())
        assert [s.campaign_id for s in plan.selected] == ["A"]
        assert plan.total_discount == Decimal("100.00")
        assert plan.final_total == Decimal("900.00")

        result = await discount_service.apply_automatic_discounts(make_context(), order_id="order_9")
        assert result.success is True
        assert [a.campaign_id for a in result.applied] == ["A"]

        async with session_maker() as session:
            assert await UsageLedger(session).count_for_campaign("A") == 1
            assert await UsageLedger(session).count_for_campaign("C") == 0

    async def test_automatic_stack_clamped_from_lowest_priority(self, discount_service, settings_service, save_campaign, make_campaign, make_context):
        """测试叠加总额超限时从低优先级活动开始削减"""
        await settings_service.set_setting(SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value, 12)
        await save_campaign(make_campaign(id="A", priority=5, is_stackable=True, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("100")))
        await save_campaign(make_campaign(id="B", priority=3, is_stackable=True, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("50")))

        result = await discount_service.apply_automatic_discounts(make_context())

        assert result.amount == Decimal("120.00")
        assert [(a.campaign_id, a.amount) for a in result.applied] == [("A", Decimal("100.00")), ("B", Decimal("20.00"))]
        assert result.warnings[0].kind == WarningKind.CONSTRAINT_CLAMPED

    async def test_no_automatic_discounts(self, discount_service, make_context):
        """测试没有可自动应用的活动"""
        result = await discount_service.apply_automatic_discounts(make_context())
        assert result.success is False
        assert result.rejection.kind == RejectionKind.NOT_ELIGIBLE

    async def test_conflict_retries_exhausted(self, session_maker, settings_service, save_campaign, make_campaign, make_context, now):
        """测试并发冲突重试耗尽后返回USAGE_LIMIT_EXCEEDED"""
        campaign = await save_campaign(make_campaign())
        service = DiscountApplicationService(session_maker, settings_service, clock=lambda: now, max_commit_retries=2)
        service._commit = AsyncMock(return_value=None)

        result = await service.apply_discount(campaign.id, make_context())

        assert result.rejection.kind == RejectionKind.USAGE_LIMIT_EXCEEDED
        assert service._commit.await_count == 3

    async def test_conflict_then_success(self, session_maker, settings_service, save_campaign, make_campaign, make_context, now, monkeypatch):
        """测试CAS冲突后重新校验并重试成功"""
        campaign = await save_campaign(make_campaign())
        service = DiscountApplicationService(session_maker, settings_service, clock=lambda: now)

        original = UsageLedger.record_usages_atomic
        calls = {"n": 0}

        async def flaky(self, records, now=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConcurrentWriteConflictError(records[0].campaign_id)
            return await original(self, records, now=now)

        monkeypatch.setattr(UsageLedger, "record_usages_atomic", flaky)

        result = await service.apply_discount(campaign.id, make_context())
        assert result.success is True
        assert calls["n"] == 2

    async def test_integrity_error_becomes_rejection(self, discount_service, save_campaign, make_campaign, make_context, monkeypatch):
        """测试写入时的完整性错误以拒绝结果返回，不向调用方抛出"""
        campaign = await save_campaign(make_campaign())

        async def broken(self, records, now=None):
            raise IntegrityError("INSERT INTO discount_usages", {}, Exception("constraint failed"))

        monkeypatch.setattr(UsageLedger, "record_usages_atomic", broken)

        result = await discount_service.apply_discount(campaign.id, make_context())
        assert result.success is False
        assert result.rejection.kind == RejectionKind.NOT_ELIGIBLE

        result = await discount_service.apply_discount(campaign.id, make_context(), idempotency_key="req-x")
        assert result.success is False

    async def test_per_user_limit_under_concurrency(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试同一用户并发应用，单用户限用一次时只有1次成功"""
        campaign = await save_campaign(make_campaign(usage_limit_per_user=1))

        results = await asyncio.gather(*[
            discount_service.apply_discount(campaign.id, make_context())
            for _ in range(10)
        ])

        assert len([r for r in results if r.success]) == 1
        assert all(r.rejection.kind == RejectionKind.USAGE_LIMIT_EXCEEDED for r in results if not r.success)

        async with session_maker() as session:
            assert await UsageLedger(session).count_for_user(campaign.id, "user_001") == 1

    async def test_idempotency_key_scoped_to_user(self, discount_service, save_campaign, make_campaign, make_context, session_maker):
        """测试不同用户使用相同幂等键互不影响"""
        campaign = await save_campaign(make_campaign(usage_limit=10))

        alice = await discount_service.apply_discount(
            campaign.id, make_context(user_id="alice"), idempotency_key="k1"
        )
        bob = await discount_service.apply_discount(
            campaign.id, make_context(user_id="bob", order_total=Decimal("500")), idempotency_key="k1"
        )

        assert alice.amount == Decimal("100.00")
        assert bob.success is True
        assert bob.replayed is False
        assert bob.amount == Decimal("50.00")
        assert bob.usage_record_id != alice.usage_record_id

        bob_again = await discount_service.apply_discount(
            campaign.id, make_context(user_id="bob", order_total=Decimal("500")), idempotency_key="k1"
        )
        assert bob_again.replayed is True
        assert bob_again.usage_record_id == bob.usage_record_id

        async with session_maker() as session:
            assert await UsageLedger(session).count_for_campaign(campaign.id) == 2

    async def test_clamped_to_zero_campaign_not_recorded(self, discount_service, settings_service, save_campaign, make_campaign, make_context, session_maker):
        """测试叠加削减到0的活动不写使用记录，也不占用次数"""
        await settings_service.set_setting(SettingKey.MAXIMUM_DISCOUNT_PERCENTAGE.value, 10)
        await save_campaign(make_campaign(id="A", priority=5, is_stackable=True, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("100")))
        await save_campaign(make_campaign(id="B", priority=3, is_stackable=True, usage_limit=1, discount_type=DiscountType.FIXED_AMOUNT, value=Decimal("50")))

        plan = await discount_service.resolve_automatic_discounts(make_context())
        assert [s.campaign_id for s in plan.selected] == ["A"]

        result = await discount_service.apply_automatic_discounts(make_context())
        assert [(a.campaign_id, a.amount) for a in result.applied] == [("A", Decimal("100.00"))]

        async with session_maker() as session:
            assert (await CampaignRepository(session).get_by_id("B")).usage_count == 0
            assert await UsageLedger(session).count_for_campaign("B") == 0

    async def test_aware_timestamp_is_accepted(self, discount_service, save_campaign, make_campaign, make_context, now):
        """测试带时区的下单时间按同一时刻参与判断"""
        await save_campaign(make_campaign(code="TZ", value=Decimal("10")))
        ctx = make_context(timestamp=now.astimezone(timezone.utc))

        validation = await discount_service.validate_code("TZ", ctx)
        preview = await discount_service.preview_discount(validation.campaign.id, ctx)
        summaries = await discount_service.list_eligible("user_001", Decimal("1000"), timestamp=now.astimezone(timezone.utc))
        applied = await discount_service.apply_discount_code("TZ", ctx)

        assert validation.valid is True
        assert preview.eligible is True
        assert [s.code for s in summaries] == ["TZ"]
        assert applied.amount == Decimal("100.00")


class TestAllocateClampedTotal:
    """削减分摊测试类"""

    def test_reduces_lowest_priority_first(self, make_campaign):
        """测试先扣减排序靠后的活动"""
        selected = [
            PricedCampaign(campaign=make_campaign(id="a"), amount=Decimal("100")),
            PricedCampaign(campaign=make_campaign(id="b"), amount=Decimal("50")),
            PricedCampaign(campaign=make_campaign(id="c"), amount=Decimal("30"))
        ]
        amounts = [amount for _, amount in allocate_clamped_total(selected, Decimal("90"))]
        assert amounts == [Decimal("90"), Decimal("0"), Decimal("0")]

        amounts = [amount for _, amount in allocate_clamped_total(selected, Decimal("180"))]
        assert amounts == [Decimal("100"), Decimal("50"), Decimal("30")]
