"""
UsageLedger使用台账测试 - 使用SQLite临时数据库
"""

import pytest
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from promotion_engine.core.exceptions import CampaignNotFoundError, UsageLimitExceededError
from promotion_engine.models.usage import UsageRecordCreate
from promotion_engine.repositories.campaign_repository import CampaignRepository
from promotion_engine.repositories.usage_ledger import UsageLedger


def usage(campaign_id, user_id="user_001", amount="10.00", order_total="100.00", **extra):
    return UsageRecordCreate(
        campaign_id=campaign_id,
        user_id=user_id,
        discount_amount=Decimal(amount),
        order_total=Decimal(order_total),
        **extra
    )


@pytest.mark.asyncio
class TestUsageLedger:
    """使用台账测试类"""

    async def test_record_usage_increments_count(self, session_maker, save_campaign, make_campaign, now):
        """测试记录使用后计数同步增加"""
        campaign = await save_campaign(make_campaign(usage_limit=10))

        async with session_maker() as session:
            record = await UsageLedger(session).record_usage_atomic(
                campaign.id, usage(campaign.id, order_id="order_1", metadata={"channel": "app"}), now=now
            )

        assert record.order_id == "order_1"
        assert record.metadata == {"channel": "app"}
        assert record.used_at == now

        async with session_maker() as session:
            ledger = UsageLedger(session)
            assert await ledger.count_for_user(campaign.id, "user_001") == 1
            assert await ledger.count_for_campaign(campaign.id) == 1
            assert (await CampaignRepository(session).get_by_id(campaign.id)).usage_count == 1

    async def test_global_limit_rechecked_under_lock(self, session_maker, save_campaign, make_campaign, now):
        """测试锁内复核总次数，失败时整体回滚"""
        campaign = await save_campaign(make_campaign(usage_limit=1, usage_count=1))

        async with session_maker() as session:
            with pytest.raises(UsageLimitExceededError):
                await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id), now=now)

        async with session_maker() as session:
            assert await UsageLedger(session).count_for_campaign(campaign.id) == 0

    async def test_per_user_limit_rechecked(self, session_maker, save_campaign, make_campaign, now):
        """测试锁内复核单用户次数"""
        campaign = await save_campaign(make_campaign(usage_limit_per_user=1))

        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id), now=now)

        async with session_maker() as session:
            with pytest.raises(UsageLimitExceededError):
                await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id), now=now)

        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id, user_id="user_002"), now=now)

    async def test_multi_campaign_commit_is_all_or_nothing(self, session_maker, save_campaign, make_campaign, now):
        """测试多活动提交：任一活动失败则全部回滚"""
        open_campaign = await save_campaign(make_campaign(id="a_open"))
        full_campaign = await save_campaign(make_campaign(id="b_full", usage_limit=1, usage_count=1))

        async with session_maker() as session:
            with pytest.raises(UsageLimitExceededError):
                await UsageLedger(session).record_usages_atomic(
                    [usage(open_campaign.id), usage(full_campaign.id)], now=now
                )

        async with session_maker() as session:
            assert await UsageLedger(session).count_for_campaign(open_campaign.id) == 0
            assert (await CampaignRepository(session).get_by_id(open_campaign.id)).usage_count == 0

    async def test_unknown_campaign(self, session_maker, now):
        """测试活动不存在"""
        async with session_maker() as session:
            with pytest.raises(CampaignNotFoundError):
                await UsageLedger(session).record_usage_atomic("missing", usage("missing"), now=now)

    async def test_duplicate_idempotency_key_rejected(self, session_maker, save_campaign, make_campaign, now):
        """测试同一活动的幂等键唯一"""
        campaign = await save_campaign(make_campaign())

        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id, idempotency_key="k1"), now=now)

        async with session_maker() as session:
            with pytest.raises(IntegrityError):
                await UsageLedger(session).record_usage_atomic(campaign.id, usage(campaign.id, idempotency_key="k1"), now=now)

        async with session_maker() as session:
            ledger = UsageLedger(session)
            assert len(await ledger.find_by_idempotency_key("k1")) == 1
            assert (await CampaignRepository(session).get_by_id(campaign.id)).usage_count == 1

    async def test_counts_for_user(self, session_maker, save_campaign, make_campaign, now):
        """测试批量统计用户使用次数"""
        first = await save_campaign(make_campaign())
        second = await save_campaign(make_campaign())

        async with session_maker() as session:
            await UsageLedger(session).record_usages_atomic([usage(first.id), usage(second.id)], now=now)
        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(first.id, usage(first.id), now=now)

        async with session_maker() as session:
            counts = await UsageLedger(session).counts_for_user("user_001", [first.id, second.id, "other"])
        assert counts == {first.id: 2, second.id: 1, "other": 0}

    async def test_history_and_statistics(self, session_maker, save_campaign, make_campaign, now):
        """测试使用历史和活动统计"""
        campaign = await save_campaign(make_campaign(code="STATS"))
        for user_id, amount, total in [("u1", "10.00", "100.00"), ("u1", "20.00", "200.00"), ("u2", "30.00", "300.00")]:
            async with session_maker() as session:
                await UsageLedger(session).record_usage_atomic(
                    campaign.id, usage(campaign.id, user_id=user_id, amount=amount, order_total=total), now=now
                )

        async with session_maker() as session:
            ledger = UsageLedger(session)
            history, total = await ledger.get_user_usage_history("u1", limit=1, offset=0)
            stats = await ledger.get_campaign_statistics(campaign.id)

        assert total == 2
        assert len(history) == 1
        assert history[0]["campaign_code"] == "STATS"

        assert stats.total_usage == 3
        assert stats.total_discount_given == Decimal("60.00")
        assert stats.unique_users == 2
        assert stats.average_order_value == Decimal("200.00")
        assert stats.top_users[0].user_id == "u1"
        assert stats.top_users[0].usage_count == 2
        assert stats.top_users[0].total_discount == Decimal("30.00")

    async def test_idempotency_key_scoped_to_user(self, session_maker, save_campaign, make_campaign, now):
        """测试不同用户可以使用相同的幂等键，查找时按用户隔离"""
        campaign = await save_campaign(make_campaign())

        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(
                campaign.id, usage(campaign.id, user_id="alice", idempotency_key="k1"), now=now
            )
        async with session_maker() as session:
            await UsageLedger(session).record_usage_atomic(
                campaign.id, usage(campaign.id, user_id="bob", idempotency_key="k1"), now=now
            )

        async with session_maker() as session:
            ledger = UsageLedger(session)
            alice_records = await ledger.find_by_idempotency_key("k1", user_id="alice")
            assert [r.user_id for r in alice_records] == ["alice"]
            assert await ledger.find_by_idempotency_key("k1", user_id="carol") == []
