from __future__ import annotations

import unittest

import config
from trading.collaborators import CollaboratorUnavailable, PriceSample
from trading.paper_executor import PaperExecutor


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class _Market:
    def __init__(self) -> None:
        self.prices: dict[str, float] = {}
        self.down = False

    async def fetch_price(self, mint: str) -> PriceSample | None:
        if self.down:
            raise CollaboratorUnavailable("dexscreener: timeout")
        price = self.prices.get(mint)
        return PriceSample(price=price, timestamp=0.0) if price is not None else None

    async def fetch_candles(self, mint: str, interval_seconds: int, count: int) -> list:
        return []


class PaperExecutorTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            PAPER_SLIPPAGE_PERCENT=1.0,
            PAPER_PRIORITY_FEE=0.001,
            PAPER_PLATFORM_FEE=0.0,
            PAPER_NETWORK_FEE=0.0,
        )
        self.market = _Market()
        self.market.prices["mintA"] = 0.0001
        self.executor = PaperExecutor(self.market, start_balance=1.0)

    async def test_buy_fills_above_market_and_charges_fees(self) -> None:
        result = await self.executor.buy("mintA", 0.5, 10.0)
        self.assertTrue(result.success)
        self.assertTrue(result.signature.startswith("paper_"))
        self.assertAlmostEqual(result.quantity_received, 0.5 / 0.000101, places=6)
        self.assertAlmostEqual(result.fill_price, 0.000101, places=12)
        self.assertAlmostEqual(await self.executor.get_balance(), 0.499)
        self.assertAlmostEqual(self.executor.holdings["mintA"], result.quantity_received)

    async def test_slippage_is_capped_by_caller_limit(self) -> None:
        result = await self.executor.buy("mintA", 0.5, 0.5)
        self.assertAlmostEqual(result.fill_price, 0.0001005, places=12)

    async def test_buy_refuses_when_balance_short(self) -> None:
        result = await self.executor.buy("mintA", 1.0, 10.0)
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("insufficient_balance"))
        self.assertEqual(self.executor.balance, 1.0)

    async def test_buy_without_price_fails_cleanly(self) -> None:
        self.market.down = True
        result = await self.executor.buy("mintA", 0.5, 10.0)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "no_price")
        self.assertEqual(self.executor.balance, 1.0)

    async def test_sell_returns_net_proceeds(self) -> None:
        bought = await self.executor.buy("mintA", 0.5, 10.0)
        self.market.prices["mintA"] = 0.0002
        half = bought.quantity_received / 2
        result = await self.executor.sell("mintA", half, 10.0)
        self.assertTrue(result.success)
        expected = half * 0.0002 * 0.99 - 0.001
        self.assertAlmostEqual(result.proceeds, expected, places=9)
        self.assertAlmostEqual(self.executor.holdings["mintA"], half)

        await self.executor.sell("mintA", half, 10.0)
        self.assertNotIn("mintA", self.executor.holdings)

    async def test_sell_more_than_held_fails(self) -> None:
        result = await self.executor.sell("mintA", 10.0, 10.0)
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("insufficient_tokens"))

    async def test_adopted_holding_can_be_sold(self) -> None:
        self.executor.adopt_holding("mintA", 1000.0)
        result = await self.executor.sell("mintA", 1000.0, 10.0)
        self.assertTrue(result.success)
        stats = self.executor.get_stats()
        self.assertEqual(stats["open_holdings"], 0.0)
        self.assertGreater(stats["balance"], 1.0)

    async def test_adopted_holding_takes_committed_capital_from_balance(self) -> None:
        self.executor.adopt_holding("mintA", 1000.0, cost_basis=0.2)
        self.assertAlmostEqual(await self.executor.get_balance(), 0.8)
        self.executor.adopt_holding("mintA", 1000.0, cost_basis=0.2)
        self.assertAlmostEqual(await self.executor.get_balance(), 0.8)
        self.assertEqual(self.executor.holdings["mintA"], 1000.0)

    async def test_start_balance_follows_config(self) -> None:
        self.patch_cfg(PAPER_START_BALANCE=3.5)
        self.assertEqual(await PaperExecutor(self.market).get_balance(), 3.5)


if __name__ == "__main__":
    unittest.main()
