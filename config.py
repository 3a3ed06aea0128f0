"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_env_file(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv as UTF-8-SIG so a BOM does not swallow the first key."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Base .env first, then the optional per-instance override file.
_load_env_file()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_env_file(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    """Parse `source:count/window_seconds` pairs, e.g. `dexscreener:50/60,geckoterminal:25/60`."""
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


# Runtime
TRADING_MODE = os.getenv("TRADING_MODE", "paper").strip().lower()
CHAIN_ID = os.getenv("CHAIN_ID", "solana").strip().lower()
BASE_ASSET_SYMBOL = os.getenv("BASE_ASSET_SYMBOL", "SOL").strip().upper()
BASE_ASSET_MINT = os.getenv("BASE_ASSET_MINT", "So11111111111111111111111111111111111111112").strip()

# Candidate queue
QUEUE_MAX_SIZE = max(1, int(os.getenv("QUEUE_MAX_SIZE", "50")))
QUEUE_COOLDOWN_MINUTES = max(0.0, float(os.getenv("QUEUE_COOLDOWN_MINUTES", "15")))

# Pipeline
PIPELINE_MAX_CONCURRENT = max(1, int(os.getenv("PIPELINE_MAX_CONCURRENT", "2")))
MAX_OPEN_POSITIONS = max(1, int(os.getenv("MAX_OPEN_POSITIONS", "1")))
TRADE_COOLDOWN_SECONDS = max(0.0, float(os.getenv("TRADE_COOLDOWN_SECONDS", "60")))
TRANCHE_2_ENABLED = _env_bool("TRANCHE_2_ENABLED", "true")
TRANCHE_1_SHARE = min(1.0, max(0.05, float(os.getenv("TRANCHE_1_SHARE", "0.60"))))
TRANCHE_2_WAIT_CANDLES = max(1, int(os.getenv("TRANCHE_2_WAIT_CANDLES", "2")))
CANDLE_INTERVAL_SECONDS = max(1, int(os.getenv("CANDLE_INTERVAL_SECONDS", "15")))

# Risk limits (base asset units)
MAX_DAILY_TRADES = max(1, int(os.getenv("MAX_DAILY_TRADES", "2")))
MAX_DAILY_LOSS = max(0.0, float(os.getenv("MAX_DAILY_LOSS", "0.2")))
MAX_WEEKLY_LOSS = max(0.0, float(os.getenv("MAX_WEEKLY_LOSS", "0.5")))
EXIT_ON_DAILY_LIMIT = _env_bool("EXIT_ON_DAILY_LIMIT", "false")

# Sizing
POSITION_SIZE_IDEAL = max(0.0, float(os.getenv("POSITION_SIZE_IDEAL", "0.20")))
POSITION_SIZE_MIN = max(0.0, float(os.getenv("POSITION_SIZE_MIN", "0.15")))
POSITION_SIZE_MAX = max(0.0, float(os.getenv("POSITION_SIZE_MAX", "0.25")))
FEE_BUFFER = max(0.0, float(os.getenv("FEE_BUFFER", "0.05")))
DUST_QUANTITY = max(0.0, float(os.getenv("DUST_QUANTITY", "0.0001")))

# Exit ladder
HARD_STOP_PERCENT = -abs(float(os.getenv("HARD_STOP_PERCENT", "-6")))
TIME_STOP_MINUTES = max(0.0, float(os.getenv("TIME_STOP_MINUTES", "4")))
MAX_UNPROFITABLE_MINUTES = max(0.0, float(os.getenv("MAX_UNPROFITABLE_MINUTES", "10")))
TP1_PERCENT = max(0.0, float(os.getenv("TP1_PERCENT", "20")))
TP1_SELL_PERCENT = min(100.0, max(0.0, float(os.getenv("TP1_SELL_PERCENT", "40"))))
TP2_PERCENT = max(0.0, float(os.getenv("TP2_PERCENT", "35")))
TP2_SELL_PERCENT = min(100.0, max(0.0, float(os.getenv("TP2_SELL_PERCENT", "30"))))
RUNNER_TRAILING_STOP_PERCENT = max(0.0, float(os.getenv("RUNNER_TRAILING_STOP_PERCENT", "10")))
STALL_WINDOW_CANDLES = max(2, int(os.getenv("STALL_WINDOW_CANDLES", "5")))
STALL_VOLUME_DECLINE_RATIO = max(0.0, float(os.getenv("STALL_VOLUME_DECLINE_RATIO", "0.8")))
STALL_MIN_VOLUME_DECLINES = max(1, int(os.getenv("STALL_MIN_VOLUME_DECLINES", "3")))
STALL_PRICE_RANGE_PERCENT = max(0.0, float(os.getenv("STALL_PRICE_RANGE_PERCENT", "2")))

# Rug signals
DEV_SELL_CRITICAL_PERCENT = max(0.0, float(os.getenv("DEV_SELL_CRITICAL_PERCENT", "25")))
LP_REMOVAL_MIN_LIQUIDITY = max(0.0, float(os.getenv("LP_REMOVAL_MIN_LIQUIDITY", "5")))
WHALE_DUMP_CRITICAL_PERCENT = max(0.0, float(os.getenv("WHALE_DUMP_CRITICAL_PERCENT", "10")))

# Slippage (percent)
SLIPPAGE_BUY_PERCENT = max(0.0, float(os.getenv("SLIPPAGE_BUY_PERCENT", "10")))
SLIPPAGE_SELL_PERCENT = max(0.0, float(os.getenv("SLIPPAGE_SELL_PERCENT", "12")))
SLIPPAGE_EMERGENCY_PERCENT = max(0.0, float(os.getenv("SLIPPAGE_EMERGENCY_PERCENT", "18")))

# Loops
DISCOVERY_POLL_SECONDS = max(0.5, float(os.getenv("DISCOVERY_POLL_SECONDS", "5")))
MONITOR_POLL_SECONDS = max(0.1, float(os.getenv("MONITOR_POLL_SECONDS", "1")))
ORCHESTRATOR_TICK_SECONDS = max(0.01, float(os.getenv("ORCHESTRATOR_TICK_SECONDS", "0.1")))
STATUS_LOG_SECONDS = max(5.0, float(os.getenv("STATUS_LOG_SECONDS", "60")))
STALE_PRICE_SECONDS = max(1.0, float(os.getenv("STALE_PRICE_SECONDS", "30")))
# immediate | after_cooldown
DISCOVERY_RESUME_POLICY = os.getenv("DISCOVERY_RESUME_POLICY", "after_cooldown").strip().lower()
RECENT_TRADE_LOOKBACK_MINUTES = max(0.0, float(os.getenv("RECENT_TRADE_LOOKBACK_MINUTES", "60")))

# Token checks
CHECK_MIN_AGE_MINUTES = max(0.0, float(os.getenv("CHECK_MIN_AGE_MINUTES", "2")))
CHECK_MAX_AGE_MINUTES = max(0.0, float(os.getenv("CHECK_MAX_AGE_MINUTES", "30")))
CHECK_MIN_BONDING_PROGRESS = max(0.0, float(os.getenv("CHECK_MIN_BONDING_PROGRESS", "15")))
CHECK_MAX_BONDING_PROGRESS = max(0.0, float(os.getenv("CHECK_MAX_BONDING_PROGRESS", "85")))
CHECK_MIN_LIQUIDITY = max(0.0, float(os.getenv("CHECK_MIN_LIQUIDITY", "10")))
CHECK_MIN_WINDOW_VOLUME = max(0.0, float(os.getenv("CHECK_MIN_WINDOW_VOLUME", "0")))
CHECK_CANDLE_COUNT = max(2, int(os.getenv("CHECK_CANDLE_COUNT", "8")))
# Base-asset reserves at which the bonding curve completes.
BONDING_CURVE_TARGET_LIQUIDITY = max(1.0, float(os.getenv("BONDING_CURVE_TARGET_LIQUIDITY", "85")))

# Paper execution
PAPER_START_BALANCE = max(0.0, float(os.getenv("PAPER_START_BALANCE", "2.0")))
PAPER_SLIPPAGE_PERCENT = max(0.0, float(os.getenv("PAPER_SLIPPAGE_PERCENT", "1.0")))
PAPER_PRIORITY_FEE = max(0.0, float(os.getenv("PAPER_PRIORITY_FEE", "0.0007")))
PAPER_PLATFORM_FEE = max(0.0, float(os.getenv("PAPER_PLATFORM_FEE", "0.0015")))
PAPER_NETWORK_FEE = max(0.0, float(os.getenv("PAPER_NETWORK_FEE", "0.000005")))

# Market data / discovery endpoints
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com").rstrip("/")
GECKOTERMINAL_API = os.getenv("GECKOTERMINAL_API", "https://api.geckoterminal.com/api/v2").rstrip("/")
GECKO_NETWORK = os.getenv("GECKO_NETWORK", "solana").strip().lower()
DEX_TIMEOUT = max(1, int(os.getenv("DEX_TIMEOUT", "10")))
DISCOVERY_MAX_TOKENS = max(1, int(os.getenv("DISCOVERY_MAX_TOKENS", "30")))
MARKET_DATA_CACHE_SECONDS = max(0.0, float(os.getenv("MARKET_DATA_CACHE_SECONDS", "0.5")))
DEX_RETRIES = max(1, int(os.getenv("DEX_RETRIES", "3")))
DEX_BATCH_SIZE = max(1, min(30, int(os.getenv("DEX_BATCH_SIZE", "30"))))
DISCOVERY_SEEN_TTL_SECONDS = max(0.0, float(os.getenv("DISCOVERY_SEEN_TTL_SECONDS", "600")))

# HTTP client
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv("HTTP_SOURCE_RATE_LIMITS", "dexscreener:60/60,geckoterminal:25/60")
)

# Persistence and logs
DATA_DIR = os.getenv("DATA_DIR", "data")
POSITION_STATE_FILE = os.getenv("POSITION_STATE_FILE", os.path.join(DATA_DIR, "positions_state.json"))
STATE_FLUSH_INTERVAL_SECONDS = max(0.0, float(os.getenv("STATE_FLUSH_INTERVAL_SECONDS", "5")))
STATE_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("STATE_LOCK_TIMEOUT_SECONDS", "2.0")))
TRADE_DECISIONS_LOG_ENABLED = _env_bool("TRADE_DECISIONS_LOG_ENABLED", "true")
TRADE_DECISIONS_LOG_FILE = os.getenv("TRADE_DECISIONS_LOG_FILE", os.path.join("logs", "trade_decisions.jsonl"))
RUN_TAG = os.getenv("RUN_TAG", "").strip()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
