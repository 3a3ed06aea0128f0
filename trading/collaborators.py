"""Typed results and protocols for the external collaborators the core depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


class CollaboratorUnavailable(RuntimeError):
    """A collaborator could not answer after its own retries; callers skip, not reject."""


@dataclass(frozen=True)
class PriceSample:
    price: float
    timestamp: float


@dataclass(frozen=True)
class Candle:
    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class PreCheckResult:
    should_analyze: bool
    reason: str = ""


@dataclass
class ChecklistResult:
    passed: bool
    failure_reasons: list[str] = field(default_factory=list)
    passed_checks: list[str] = field(default_factory=list)


@dataclass
class BuyResult:
    success: bool
    signature: str | None = None
    quantity_received: float | None = None
    capital_spent: float | None = None
    error: str | None = None

    @property
    def fill_price(self) -> float | None:
        if not self.success or not self.quantity_received or not self.capital_spent:
            return None
        return self.capital_spent / self.quantity_received


@dataclass
class SellResult:
    success: bool
    signature: str | None = None
    proceeds: float | None = None
    error: str | None = None


class MarketDataProvider(Protocol):
    async def fetch_price(self, mint: str) -> PriceSample | None: ...

    async def fetch_candles(self, mint: str, interval_seconds: int, count: int) -> list[Candle]: ...


class SafetyChecks(Protocol):
    async def quick_pre_check(self, mint: str) -> PreCheckResult: ...

    async def run_full_checklist(self, mint: str) -> ChecklistResult: ...


class ExecutionProvider(Protocol):
    async def buy(self, mint: str, capital_amount: float, max_slippage_percent: float) -> BuyResult: ...

    async def sell(self, mint: str, quantity: float, max_slippage_percent: float) -> SellResult: ...

    async def get_balance(self) -> float: ...


class DiscoverySource(Protocol):
    async def poll(self) -> list: ...
