"""Simulated execution against live prices and a paper balance."""

from __future__ import annotations

import logging
import uuid

import config
from trading.collaborators import BuyResult, CollaboratorUnavailable, MarketDataProvider, SellResult
from utils.addressing import normalize_mint, short_mint

logger = logging.getLogger(__name__)

_QTY_EPSILON = 1e-9


class PaperExecutor:
    """Execution provider that fills at the market price with simulated slippage and fees."""

    def __init__(self, market: MarketDataProvider, start_balance: float | None = None) -> None:
        self.market = market
        if start_balance is None:
            start_balance = float(getattr(config, "PAPER_START_BALANCE", 2.0))
        self.start_balance = float(start_balance)
        self.balance = float(start_balance)
        self.holdings: dict[str, float] = {}
        self.fees_paid = 0.0

    @staticmethod
    def _fees() -> float:
        return (
            float(getattr(config, "PAPER_PRIORITY_FEE", 0.0007))
            + float(getattr(config, "PAPER_PLATFORM_FEE", 0.0015))
            + float(getattr(config, "PAPER_NETWORK_FEE", 0.000005))
        )

    @staticmethod
    def _slippage_fraction(max_slippage_percent: float) -> float:
        simulated = float(getattr(config, "PAPER_SLIPPAGE_PERCENT", 1.0))
        return min(simulated, max(0.0, float(max_slippage_percent))) / 100.0

    async def _price(self, mint: str) -> float | None:
        try:
            sample = await self.market.fetch_price(mint)
        except CollaboratorUnavailable as exc:
            logger.warning("PAPER_PRICE_UNAVAILABLE mint=%s err=%s", short_mint(mint), exc)
            return None
        if sample is None or sample.price <= 0:
            return None
        return sample.price

    async def buy(self, mint: str, capital_amount: float, max_slippage_percent: float) -> BuyResult:
        mint = normalize_mint(mint)
        if capital_amount <= 0:
            return BuyResult(success=False, error="invalid_amount")
        fees = self._fees()
        if self.balance < capital_amount + fees:
            return BuyResult(success=False, error=f"insufficient_balance {self.balance:.4f}")
        price = await self._price(mint)
        if price is None:
            return BuyResult(success=False, error="no_price")
        fill_price = price * (1.0 + self._slippage_fraction(max_slippage_percent))
        quantity = capital_amount / fill_price
        self.balance -= capital_amount + fees
        self.fees_paid += fees
        self.holdings[mint] = self.holdings.get(mint, 0.0) + quantity
        logger.info(
            "PAPER_BUY mint=%s capital=%.4f price=%.10f qty=%.4f balance=%.4f",
            short_mint(mint),
            capital_amount,
            fill_price,
            quantity,
            self.balance,
        )
        return BuyResult(
            success=True,
            signature=f"paper_{uuid.uuid4().hex[:16]}",
            quantity_received=quantity,
            capital_spent=capital_amount,
        )

    async def sell(self, mint: str, quantity: float, max_slippage_percent: float) -> SellResult:
        mint = normalize_mint(mint)
        held = self.holdings.get(mint, 0.0)
        if quantity <= 0 or quantity > held + _QTY_EPSILON:
            return SellResult(success=False, error=f"insufficient_tokens held={held:.4f}")
        price = await self._price(mint)
        if price is None:
            return SellResult(success=False, error="no_price")
        fill_price = price * (1.0 - self._slippage_fraction(max_slippage_percent))
        fees = self._fees()
        proceeds = max(0.0, quantity * fill_price - fees)
        remaining = held - quantity
        if remaining <= _QTY_EPSILON:
            self.holdings.pop(mint, None)
        else:
            self.holdings[mint] = remaining
        self.balance += proceeds
        self.fees_paid += fees
        logger.info(
            "PAPER_SELL mint=%s qty=%.4f price=%.10f proceeds=%.6f balance=%.4f",
            short_mint(mint),
            quantity,
            fill_price,
            proceeds,
            self.balance,
        )
        return SellResult(success=True, signature=f"paper_{uuid.uuid4().hex[:16]}", proceeds=proceeds)

    def adopt_holding(self, mint: str, quantity: float, cost_basis: float = 0.0) -> None:
        """Re-register tokens of a position restored from disk after a restart.

        The balance starts from PAPER_START_BALANCE on every run, so the capital
        still committed to the adopted tokens is taken out of it again.
        """
        mint = normalize_mint(mint)
        quantity = float(quantity)
        held = self.holdings.get(mint, 0.0)
        added = quantity - held
        if added <= 0 or quantity <= 0:
            return
        committed = max(0.0, float(cost_basis)) * added / quantity
        self.holdings[mint] = quantity
        self.balance = max(0.0, self.balance - committed)
        logger.info(
            "PAPER_ADOPT mint=%s qty=%.4f committed=%.4f balance=%.4f",
            short_mint(mint),
            quantity,
            committed,
            self.balance,
        )

    async def get_balance(self) -> float:
        return self.balance

    def get_stats(self) -> dict[str, float]:
        return {
            "start_balance": self.start_balance,
            "balance": round(self.balance, 6),
            "fees_paid": round(self.fees_paid, 6),
            "open_holdings": float(len(self.holdings)),
        }
