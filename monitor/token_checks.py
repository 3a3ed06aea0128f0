"""Pre-check and full checklist over live market data."""

from __future__ import annotations

import logging
import time
from typing import Callable

import config
from monitor.market_data import DexMarketData, bonding_progress, pair_age_minutes, pair_liquidity
from trading.collaborators import ChecklistResult, PreCheckResult
from utils.addressing import short_mint

logger = logging.getLogger(__name__)


class MarketTokenChecks:
    """Safety checks that only need the market-data provider.

    The quick pre-check is cheap and screens out tokens outside the age and
    bonding-curve window. The full checklist runs every check and reports all
    failures together so one rejection carries the whole picture.
    """

    def __init__(self, market: DexMarketData, *, clock: Callable[[], float] = time.time) -> None:
        self.market = market
        self._clock = clock

    async def quick_pre_check(self, mint: str) -> PreCheckResult:
        pair = await self.market.fetch_pair(mint)
        if pair is None:
            return PreCheckResult(should_analyze=False, reason="no_pair")

        age = pair_age_minutes(pair, self._clock())
        min_age = float(getattr(config, "CHECK_MIN_AGE_MINUTES", 2.0))
        max_age = float(getattr(config, "CHECK_MAX_AGE_MINUTES", 30.0))
        if age is None:
            return PreCheckResult(should_analyze=False, reason="age_unknown")
        if age < min_age:
            return PreCheckResult(should_analyze=False, reason=f"too_young {age:.1f}m<{min_age:g}m")
        if max_age > 0 and age > max_age:
            return PreCheckResult(should_analyze=False, reason=f"too_old {age:.1f}m>{max_age:g}m")

        progress = bonding_progress(pair_liquidity(pair))
        min_progress = float(getattr(config, "CHECK_MIN_BONDING_PROGRESS", 15.0))
        max_progress = float(getattr(config, "CHECK_MAX_BONDING_PROGRESS", 85.0))
        if progress is None:
            return PreCheckResult(should_analyze=False, reason="progress_unknown")
        if progress < min_progress:
            return PreCheckResult(should_analyze=False, reason=f"too_early {progress:.1f}%<{min_progress:g}%")
        if progress > max_progress:
            return PreCheckResult(should_analyze=False, reason=f"near_graduation {progress:.1f}%>{max_progress:g}%")
        return PreCheckResult(should_analyze=True)

    async def run_full_checklist(self, mint: str) -> ChecklistResult:
        passed: list[str] = []
        failed: list[str] = []

        sample = await self.market.fetch_price(mint)
        stale_after = float(getattr(config, "STALE_PRICE_SECONDS", 30.0))
        if sample is None:
            failed.append("price: unavailable")
        elif self._clock() - sample.timestamp > stale_after:
            failed.append(f"price: stale {self._clock() - sample.timestamp:.0f}s")
        else:
            passed.append("price_fresh")

        liquidity = await self.market.fetch_liquidity(mint)
        min_liquidity = float(getattr(config, "CHECK_MIN_LIQUIDITY", 10.0))
        if liquidity is None:
            failed.append("liquidity: unknown")
        elif liquidity < min_liquidity:
            failed.append(f"liquidity: {liquidity:.2f}<{min_liquidity:g}")
        else:
            passed.append("liquidity_floor")

        count = int(getattr(config, "CHECK_CANDLE_COUNT", 8))
        interval = int(getattr(config, "CANDLE_INTERVAL_SECONDS", 15))
        candles = await self.market.fetch_candles(mint, interval, count)
        if len(candles) < 2:
            failed.append(f"momentum: {len(candles)} candles")
        else:
            if candles[-1].close >= candles[0].open:
                passed.append("momentum_positive")
            else:
                change = (candles[-1].close - candles[0].open) / candles[0].open * 100.0 if candles[0].open > 0 else 0.0
                failed.append(f"momentum: {change:.1f}%")
            volume = sum(c.volume for c in candles)
            min_volume = float(getattr(config, "CHECK_MIN_WINDOW_VOLUME", 0.0))
            if volume >= min_volume and volume > 0:
                passed.append("volume_window")
            else:
                failed.append(f"volume: {volume:.2f}<{max(min_volume, 0.0):g}")

        result = ChecklistResult(passed=not failed, failure_reasons=failed, passed_checks=passed)
        logger.info(
            "CHECKLIST mint=%s passed=%s ok=%s failed=%s",
            short_mint(mint),
            result.passed,
            len(passed),
            "; ".join(failed) or "-",
        )
        return result
