"""Tests for per-deal locking."""

import asyncio

import pytest

from deal_invoicing.locks import DealLocks


class TestDealLocks:
    @pytest.mark.asyncio
    async def test_same_deal_is_serialized(self):
        locks = DealLocks()
        order: list[str] = []

        async def work(name: str):
            async with locks.hold(42):
                order.append(f"{name}-start")
                await asyncio.sleep(0)
                order.append(f"{name}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_deals_run_concurrently(self):
        locks = DealLocks()
        order: list[str] = []

        async def work(deal_id: int):
            async with locks.hold(deal_id):
                order.append(f"{deal_id}-start")
                await asyncio.sleep(0)
                order.append(f"{deal_id}-end")

        await asyncio.gather(work(1), work(2))

        assert order[:2] == ["1-start", "2-start"]

    @pytest.mark.asyncio
    async def test_locks_are_released_and_dropped(self):
        locks = DealLocks()

        async with locks.hold(42):
            assert locks.is_locked(42)
            assert len(locks) == 1

        assert not locks.is_locked(42)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = DealLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold(42):
                raise RuntimeError("boom")

        assert len(locks) == 0
