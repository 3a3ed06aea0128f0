"""Candidate discovery from DexScreener's latest token profiles."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import config
from monitor.market_data import DexMarketData, bonding_progress, pair_age_minutes, pair_liquidity
from trading.candidate_queue import Candidate
from utils.addressing import is_valid_mint, normalize_mint

logger = logging.getLogger(__name__)


def _trade_count(pair: dict[str, Any]) -> int:
    txns = (pair.get("txns") or {}).get("h1") or {}
    try:
        return int(txns.get("buys") or 0) + int(txns.get("sells") or 0)
    except (TypeError, ValueError):
        return 0


class DexProfileDiscovery:
    """Polls newly published token profiles for the configured chain.

    Profiles only carry the address and links, so each new mint is resolved
    to its deepest pair for symbol, age, market cap and activity. A mint is
    resolved once per DISCOVERY_SEEN_TTL_SECONDS; the queue does the rest of
    the dedup.
    """

    def __init__(self, market: DexMarketData, *, clock: Callable[[], float] = time.time) -> None:
        self.market = market
        self._clock = clock
        self.seen_tokens: dict[str, float] = {}

    def _prune_seen_tokens(self, now: float) -> None:
        ttl = float(getattr(config, "DISCOVERY_SEEN_TTL_SECONDS", 600.0))
        expired = [mint for mint, ts in self.seen_tokens.items() if now - ts > ttl]
        for mint in expired:
            self.seen_tokens.pop(mint, None)

    async def _latest_profiles(self) -> list[dict[str, Any]]:
        url = f"{config.DEXSCREENER_API}/token-profiles/latest/v1"
        data = await self.market.fetch_json(url, source="dexscreener")
        if not isinstance(data, list):
            return []
        chain = str(getattr(config, "CHAIN_ID", "solana")).lower()
        return [row for row in data if isinstance(row, dict) and str(row.get("chainId", "")).lower() == chain]

    async def poll(self) -> list[Candidate]:
        now = self._clock()
        self._prune_seen_tokens(now)
        limit = max(1, int(getattr(config, "DISCOVERY_MAX_TOKENS", 30)))

        socials: dict[str, bool] = {}
        for row in await self._latest_profiles():
            mint = normalize_mint(str(row.get("tokenAddress") or ""))
            if not is_valid_mint(mint) or mint in self.seen_tokens or mint in socials:
                continue
            socials[mint] = bool(row.get("links"))
            if len(socials) >= limit:
                break
        if not socials:
            return []

        pairs = await self.market.fetch_pairs(list(socials))
        out: list[Candidate] = []
        for mint, has_socials in socials.items():
            self.seen_tokens[mint] = now
            pair = pairs.get(mint)
            if pair is None:
                continue
            base = pair.get("baseToken") or {}
            market_cap = pair.get("marketCap") or pair.get("fdv")
            out.append(
                Candidate(
                    mint=mint,
                    symbol=str(base.get("symbol") or "UNKNOWN"),
                    discovered_at=now,
                    age_minutes=pair_age_minutes(pair, now),
                    bonding_progress=bonding_progress(pair_liquidity(pair)),
                    market_cap=float(market_cap) if market_cap else None,
                    trade_count=_trade_count(pair),
                    has_socials=has_socials,
                    source="dexscreener_profiles",
                )
            )
        logger.debug("DISCOVERY_RESOLVED profiles=%s candidates=%s", len(socials), len(out))
        return out
