"""Market data over DexScreener (pairs, prices, liquidity) and GeckoTerminal (OHLCV)."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import config
from trading.collaborators import Candle, CollaboratorUnavailable, PriceSample
from trading.rug_signals import SIGNAL_LP_REMOVAL, RugSignal
from utils.addressing import normalize_mint, short_mint
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
}


def _float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def pair_liquidity(pair: dict[str, Any] | None) -> float | None:
    """Base-asset (quote side) liquidity of a pair; zero or missing means no data."""
    if not isinstance(pair, dict):
        return None
    liquidity = _float((pair.get("liquidity") or {}).get("quote"))
    return liquidity if liquidity > 0 else None


def bonding_progress(liquidity: float | None) -> float | None:
    if liquidity is None:
        return None
    target = float(getattr(config, "BONDING_CURVE_TARGET_LIQUIDITY", 85.0))
    return max(0.0, min(100.0, liquidity / target * 100.0))


def pair_age_minutes(pair: dict[str, Any] | None, now: float) -> float | None:
    if not isinstance(pair, dict):
        return None
    created_ms = _float(pair.get("pairCreatedAt"))
    if created_ms <= 0:
        return None
    return max(0.0, (now - created_ms / 1000.0) / 60.0)


def _gecko_timeframe(interval_seconds: int) -> tuple[str, int]:
    interval = max(1, int(interval_seconds))
    if interval < 60:
        return "second", interval
    if interval < 3600:
        return "minute", max(1, interval // 60)
    return "hour", max(1, interval // 3600)


class DexMarketData:
    """Price, candle, liquidity and liquidity-pull signal provider.

    Pair lookups are cached for MARKET_DATA_CACHE_SECONDS so the monitor, the
    checks and the paper executor share one request per tick. Exhausted
    retries on a throttled or failing source raise CollaboratorUnavailable;
    a clean "not found" is reported as no data.
    """

    def __init__(self, http: ResilientHttpClient | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(getattr(config, "DEX_TIMEOUT", 10)),
            headers=_HEADERS,
            source_limits={"dexscreener": 8, "geckoterminal": 5},
        )
        self._clock = clock
        self._pairs: dict[str, tuple[float, dict[str, Any] | None]] = {}

    async def close(self) -> None:
        await self._http.close()

    def runtime_stats(self) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats()

    async def fetch_json(self, url: str, source: str, params: dict[str, Any] | None = None) -> Any | None:
        result: HttpResult = await self._http.get_json(
            url,
            source=source,
            params=params,
            max_attempts=int(getattr(config, "DEX_RETRIES", 3)),
        )
        if result.ok:
            return result.data
        if result.retryable:
            raise CollaboratorUnavailable(f"{source}: {result.error}")
        logger.debug("MARKET_DATA_MISS source=%s status=%s url=%s", source, result.status, url)
        return None

    async def fetch_pairs(self, mints: list[str]) -> dict[str, dict[str, Any] | None]:
        """Deepest pair per mint on the configured chain, resolved in batches of DEX_BATCH_SIZE."""
        now = self._clock()
        ttl = float(getattr(config, "MARKET_DATA_CACHE_SECONDS", 0.5))
        out: dict[str, dict[str, Any] | None] = {}
        pending: list[str] = []
        for raw in mints:
            mint = normalize_mint(raw)
            if not mint or mint in out or mint in pending:
                continue
            cached = self._pairs.get(mint)
            if cached is not None and now - cached[0] < ttl:
                out[mint] = cached[1]
            else:
                pending.append(mint)

        chain = str(getattr(config, "CHAIN_ID", "solana"))
        batch = max(1, int(getattr(config, "DEX_BATCH_SIZE", 30)))
        for start in range(0, len(pending), batch):
            chunk = pending[start : start + batch]
            url = f"{config.DEXSCREENER_API}/tokens/v1/{chain}/{','.join(chunk)}"
            data = await self.fetch_json(url, source="dexscreener")
            pairs = data if isinstance(data, list) else (data.get("pairs") if isinstance(data, dict) else None)
            best: dict[str, dict[str, Any]] = {}
            for pair in pairs or []:
                if not isinstance(pair, dict):
                    continue
                if str(pair.get("chainId", chain)).lower() != chain:
                    continue
                address = normalize_mint(str((pair.get("baseToken") or {}).get("address", "")))
                if address not in chunk:
                    continue
                current = best.get(address)
                if current is None or (pair_liquidity(pair) or 0.0) > (pair_liquidity(current) or 0.0):
                    best[address] = pair
            for mint in chunk:
                self._pairs[mint] = (now, best.get(mint))
                out[mint] = best.get(mint)

        if len(self._pairs) > 500:
            cutoff = now - 60.0
            self._pairs = {k: v for k, v in self._pairs.items() if v[0] >= cutoff}
        return out

    async def fetch_pair(self, mint: str) -> dict[str, Any] | None:
        return (await self.fetch_pairs([mint])).get(normalize_mint(mint))

    async def fetch_price(self, mint: str) -> PriceSample | None:
        pair = await self.fetch_pair(mint)
        if pair is None:
            return None
        price = _float(pair.get("priceNative"))
        if price <= 0:
            return None
        sampled_at = self._pairs.get(normalize_mint(mint), (self._clock(), None))[0]
        return PriceSample(price=price, timestamp=sampled_at)

    async def fetch_liquidity(self, mint: str) -> float | None:
        return pair_liquidity(await self.fetch_pair(mint))

    async def fetch_candles(self, mint: str, interval_seconds: int, count: int) -> list[Candle]:
        """Oldest-first candles of the deepest pool; empty when the pool or its history is unknown."""
        pair = await self.fetch_pair(mint)
        pool = str((pair or {}).get("pairAddress") or "").strip()
        if not pool:
            return []
        timeframe, aggregate = _gecko_timeframe(interval_seconds)
        network = str(getattr(config, "GECKO_NETWORK", "solana"))
        url = f"{config.GECKOTERMINAL_API}/networks/{network}/pools/{pool}/ohlcv/{timeframe}"
        data = await self.fetch_json(
            url,
            source="geckoterminal",
            params={"aggregate": aggregate, "limit": max(1, int(count)), "currency": "token"},
        )
        if not isinstance(data, dict):
            return []
        rows = ((data.get("data") or {}).get("attributes") or {}).get("ohlcv_list") or []
        candles: list[Candle] = []
        for row in rows:
            if not isinstance(row, (list, tuple)) or len(row) < 6:
                continue
            ts, o, h, low, c, v = (_float(x) for x in row[:6])
            candles.append(Candle(timestamp=ts, open=o, high=h, low=low, close=c, volume=v))
        candles.sort(key=lambda candle: candle.timestamp)
        return candles[-max(1, int(count)):]

    async def fetch_rug_signals(self, mint: str) -> list[RugSignal]:
        """Liquidity-pull signal from the pair's quote side.

        Unlike `fetch_liquidity`, a reported zero is a drained pool here, not missing data.
        """
        pair = await self.fetch_pair(mint)
        raw = ((pair or {}).get("liquidity") or {}).get("quote")
        try:
            liquidity = max(0.0, float(raw))
        except (TypeError, ValueError):
            return []
        signal = RugSignal(
            kind=SIGNAL_LP_REMOVAL,
            mint=normalize_mint(mint),
            timestamp=self._clock(),
            value=liquidity,
            detail=f"liquidity={liquidity:.2f}",
        )
        if signal.critical:
            logger.warning("RUG_SIGNAL kind=%s mint=%s liquidity=%.2f", signal.kind, short_mint(mint), liquidity)
        return [signal]
