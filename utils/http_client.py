"""Shared aiohttp client with retry/backoff, 429 cooldowns and per-source limits."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

_NO_RATE_LIMIT = (1_000_000, 1.0)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""

    @property
    def retryable(self) -> bool:
        """True when the failure was transport-level or a throttling/server status."""
        if self.ok:
            return False
        return self.status == 0 or self.status == 429 or 500 <= self.status <= 599


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    limiter_waits: int = 0
    latency_total_ms: float = 0.0
    latency_count: int = 0

    def observe(self, started: float) -> None:
        self.latency_total_ms += max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_count += 1


def backoff_delay(attempt: int, status: int) -> float:
    """Capped exponential delay for `attempt` (1-based) plus jitter; 429 adds a bias."""
    base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
    cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
    jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0))
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    if status == 429:
        delay = min(cap, delay + max(0.0, float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0) or 0.0)))
    return max(0.01, delay + random.uniform(0.0, jitter))


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {self._source_key(k): int(v) for k, v in (source_limits or {}).items()}
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._rate_windows: dict[str, deque[float]] = {}
        self._cooldown_until: dict[str, float] = {}

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector, headers=self._headers)
        return self._session

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
            sem = asyncio.Semaphore(max(1, self._source_limits.get(key, default_limit)))
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        return self._stats.setdefault(key, HttpSourceStats())

    async def _wait_turn(self, key: str, stats: HttpSourceStats) -> None:
        """Block until the source is out of 429 cooldown and has a free rate-window slot."""
        limits = getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}
        max_calls, window_seconds = limits.get(key, _NO_RATE_LIMIT)
        while True:
            now = time.monotonic()
            wait_for = self._cooldown_until.get(key, 0.0) - now
            if wait_for <= 0:
                window = self._rate_windows.setdefault(key, deque())
                while window and window[0] <= now - window_seconds:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait_for = window[0] + window_seconds - now
            stats.limiter_waits += 1
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs", key, wait_for)
            await asyncio.sleep(max(0.01, wait_for))

    def _start_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float((response.headers or {}).get("Retry-After", "") or 0.0))
        except ValueError:
            retry_after = 0.0
        cooldown = max(float(getattr(config, "HTTP_429_COOLDOWN_SECONDS", 30.0) or 0.0), retry_after)
        until = time.monotonic() + cooldown
        self._cooldown_until[key] = max(self._cooldown_until.get(key, 0.0), until)
        logger.warning("HTTP_429_COOLDOWN source=%s seconds=%.1f", key, cooldown)

    def snapshot_stats(self) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for key, row in self._stats.items():
            total = row.ok + row.fail
            out[key] = {
                "ok": row.ok,
                "fail": row.fail,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "limiter_waits": row.limiter_waits,
                "error_percent": round(row.fail / total * 100.0, 2) if total else 0.0,
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3))
        key = self._source_key(source)
        stats = self._stats_row(key)
        result = HttpResult(ok=False, status=0, data=None, error="http_exhausted")
        for attempt in range(1, attempts + 1):
            await self._wait_turn(key, stats)
            async with self._semaphore(key):
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params) as response:
                        stats.observe(started)
                        status = int(response.status or 0)
                        if status == 200:
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=await response.json(content_type=None))
                        if status == 429:
                            stats.rate_limited += 1
                            self._start_cooldown(key, response)
                        result = HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.observe(started)
                    result = HttpResult(ok=False, status=0, data=None, error=f"http_error:{type(exc).__name__}")

            if not result.retryable or attempt >= attempts:
                break
            stats.retries += 1
            delay = backoff_delay(attempt, result.status)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                attempt,
                attempts,
                result.status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        stats.fail += 1
        return result
