"""Entry point for the bonding-curve auto-trader."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.discovery import DexProfileDiscovery
from monitor.market_data import DexMarketData
from monitor.token_checks import MarketTokenChecks
from trading.candidate_queue import CandidateQueue
from trading.collaborators import ExecutionProvider
from trading.orchestrator import RESUME_AFTER_COOLDOWN, RESUME_IMMEDIATE, AutoOrchestrator
from trading.paper_executor import PaperExecutor
from trading.pipeline import TradePipeline
from trading.position_manager import PositionManager
from trading.position_monitor import PositionMonitor
from trading.risk_gate import RiskGate
from trading.trade_journal import TradeJournal

TRADING_MODES = {"paper", "live"}


class ConfigError(RuntimeError):
    """Configuration that must stop the process before any loop starts."""


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def validate_config(executor: ExecutionProvider | None = None) -> None:
    mode = str(getattr(config, "TRADING_MODE", "paper"))
    if mode not in TRADING_MODES:
        raise ConfigError(f"Unknown TRADING_MODE={mode!r}; expected one of {sorted(TRADING_MODES)}")
    if mode == "live" and executor is None:
        raise ConfigError("TRADING_MODE=live requires an injected execution provider")
    if float(config.POSITION_SIZE_MIN) > float(config.POSITION_SIZE_MAX):
        raise ConfigError(
            f"POSITION_SIZE_MIN={config.POSITION_SIZE_MIN} exceeds POSITION_SIZE_MAX={config.POSITION_SIZE_MAX}"
        )
    policy = str(getattr(config, "DISCOVERY_RESUME_POLICY", RESUME_AFTER_COOLDOWN))
    if policy not in {RESUME_IMMEDIATE, RESUME_AFTER_COOLDOWN}:
        raise ConfigError(f"Unknown DISCOVERY_RESUME_POLICY={policy!r}")


def build_orchestrator(
    market: DexMarketData,
    executor: ExecutionProvider | None = None,
) -> AutoOrchestrator:
    """Wire the core against the HTTP adapters; paper execution unless one is injected."""
    validate_config(executor)
    if executor is None:
        executor = PaperExecutor(market)

    journal = TradeJournal()
    risk_gate = RiskGate()
    positions = PositionManager(risk_gate, state_file=config.POSITION_STATE_FILE)
    queue = CandidateQueue()
    pipeline = TradePipeline(
        queue,
        risk_gate,
        positions,
        market,
        MarketTokenChecks(market),
        executor,
        journal,
    )
    monitor = PositionMonitor(
        positions,
        market,
        executor,
        queue,
        risk_gate,
        journal,
        rug_source=market,
    )
    return AutoOrchestrator(queue, pipeline, monitor, positions, DexProfileDiscovery(market), journal)


def _install_signal_handlers(orchestrator: AutoOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(orchestrator.request_stop))


async def run() -> None:
    market = DexMarketData()
    try:
        orchestrator = build_orchestrator(market)
        logger.info(
            "START mode=%s chain=%s base=%s size=%.3f max_open=%s",
            config.TRADING_MODE,
            config.CHAIN_ID,
            config.BASE_ASSET_SYMBOL,
            config.POSITION_SIZE_IDEAL,
            config.MAX_OPEN_POSITIONS,
        )
        _install_signal_handlers(orchestrator)
        await orchestrator.run()
    finally:
        await market.close()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run())
    except ConfigError as exc:
        logger.error("CONFIG_ERROR %s", exc)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
