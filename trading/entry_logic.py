"""Tranche planning and the tranche-2 confirmation wait."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import config
from trading.collaborators import CollaboratorUnavailable, MarketDataProvider, PriceSample
from utils.addressing import short_mint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranchePlan:
    total: float
    tranche1: float
    tranche2: float


def plan_tranches(total: float, *, share: float | None = None, tranche2_enabled: bool | None = None) -> TranchePlan:
    if tranche2_enabled is None:
        tranche2_enabled = bool(getattr(config, "TRANCHE_2_ENABLED", True))
    if not tranche2_enabled:
        return TranchePlan(total=total, tranche1=total, tranche2=0.0)
    if share is None:
        share = float(getattr(config, "TRANCHE_1_SHARE", 0.60))
    share = min(1.0, max(0.0, share))
    first = total * share
    return TranchePlan(total=total, tranche1=first, tranche2=total - first)


def compute_position_size(
    balance: float,
    *,
    ideal: float | None = None,
    minimum: float | None = None,
    maximum: float | None = None,
    fee_buffer: float | None = None,
) -> float:
    """Ideal size clamped to [min, max] and to what the balance leaves after fees; 0 if below min."""
    ideal = float(getattr(config, "POSITION_SIZE_IDEAL", 0.20)) if ideal is None else ideal
    minimum = float(getattr(config, "POSITION_SIZE_MIN", 0.15)) if minimum is None else minimum
    maximum = float(getattr(config, "POSITION_SIZE_MAX", 0.25)) if maximum is None else maximum
    fee_buffer = float(getattr(config, "FEE_BUFFER", 0.05)) if fee_buffer is None else fee_buffer

    size = min(max(ideal, minimum), maximum)
    size = min(size, max(0.0, balance - fee_buffer))
    if size < minimum:
        return 0.0
    return size


async def wait_for_confirmation(
    market: MarketDataProvider,
    mint: str,
    reference_price: float,
    *,
    interval_seconds: float | None = None,
    max_intervals: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PriceSample | None:
    """Sample once per interval; the first price at or above `reference_price` confirms.

    Returns the confirming sample, or None when the window runs out.
    """
    if interval_seconds is None:
        interval_seconds = float(getattr(config, "CANDLE_INTERVAL_SECONDS", 15))
    if max_intervals is None:
        max_intervals = int(getattr(config, "TRANCHE_2_WAIT_CANDLES", 2))
    for attempt in range(1, max_intervals + 1):
        await sleep(interval_seconds)
        try:
            sample = await market.fetch_price(mint)
        except CollaboratorUnavailable as exc:
            logger.debug("CONFIRM_PRICE_UNAVAILABLE mint=%s err=%s", short_mint(mint), exc)
            continue
        if sample is None or sample.price <= 0:
            continue
        if sample.price >= reference_price:
            logger.info(
                "TRANCHE2_CONFIRMED mint=%s price=%.10f ref=%.10f after=%s",
                short_mint(mint),
                sample.price,
                reference_price,
                attempt,
            )
            return sample
        logger.debug(
            "CONFIRM_WAIT mint=%s price=%.10f ref=%.10f attempt=%s/%s",
            short_mint(mint),
            sample.price,
            reference_price,
            attempt,
            max_intervals,
        )
    return None
