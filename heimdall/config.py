"""Heimdall configuration: all settings from env vars with safe defaults."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from package root
_ENV_PATH = Path(__file__).parent / ".env"
if _ENV_PATH.exists():
    load_dotenv(_ENV_PATH)
# Repo-level .env for shared keys
_REPO_ENV = Path(__file__).parent.parent / ".env"
if _REPO_ENV.exists():
    load_dotenv(_REPO_ENV, override=False)


class ConfigError(Exception):
    """Required startup configuration is missing or invalid."""


def _bool(val: str) -> bool:
    return val.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class TimeframeSpec:
    """One analysis timeframe: how often it samples and how much it needs."""
    label: str
    interval_seconds: float
    points_needed: int

    @property
    def capacity(self) -> int:
        return self.points_needed * 3

    @property
    def window_minutes(self) -> float:
        return self.interval_seconds * self.points_needed / 60


def _timeframes() -> tuple[TimeframeSpec, ...]:
    return (
        TimeframeSpec(
            "fast",
            float(os.getenv("HEIMDALL_TF_FAST_INTERVAL", "5")),
            int(os.getenv("HEIMDALL_TF_FAST_POINTS", "12")),
        ),
        TimeframeSpec(
            "medium",
            float(os.getenv("HEIMDALL_TF_MEDIUM_INTERVAL", "15")),
            int(os.getenv("HEIMDALL_TF_MEDIUM_POINTS", "12")),
        ),
        TimeframeSpec(
            "slow",
            float(os.getenv("HEIMDALL_TF_SLOW_INTERVAL", "60")),
            int(os.getenv("HEIMDALL_TF_SLOW_POINTS", "10")),
        ),
    )


@dataclass(frozen=True)
class HeimdallConfig:
    # ── Hyperliquid API ──
    hl_secret_key: str = os.getenv("HEIMDALL_HL_SECRET_KEY", "")
    hl_account_address: str = os.getenv("HEIMDALL_HL_ACCOUNT_ADDRESS", "")
    hl_testnet: bool = _bool(os.getenv("HEIMDALL_HL_TESTNET", "false"))

    # ── Markets ──
    symbols: tuple[str, ...] = field(
        default_factory=lambda: tuple(
            s.strip().upper()
            for s in os.getenv("HEIMDALL_SYMBOLS", "SOL,BTC,ETH").split(",")
            if s.strip()
        )
    )
    tick_seconds: float = float(os.getenv("HEIMDALL_TICK_SECONDS", "5"))

    # ── Analysis ──
    timeframes: tuple[TimeframeSpec, ...] = field(default_factory=_timeframes)
    imbalance_threshold: float = float(os.getenv("HEIMDALL_IMBALANCE_THRESHOLD", "0.3"))
    trend_base_pct: float = float(os.getenv("HEIMDALL_TREND_BASE_PCT", "0.05"))
    max_volatility_pct: float = float(os.getenv("HEIMDALL_MAX_VOLATILITY", "0.5"))
    book_depth: int = int(os.getenv("HEIMDALL_BOOK_DEPTH", "15"))

    # ── Feed quality ──
    feed_max_age_seconds: float = float(os.getenv("HEIMDALL_FEED_MAX_AGE", "60"))
    feed_max_spread_pct: float = float(os.getenv("HEIMDALL_FEED_MAX_SPREAD", "0.5"))
    feed_timeout_seconds: float = float(os.getenv("HEIMDALL_FEED_TIMEOUT", "10"))

    # ── Sizing / entries ──
    base_notional_usd: float = float(os.getenv("HEIMDALL_BASE_NOTIONAL", "100"))
    leverage: int = int(os.getenv("HEIMDALL_LEVERAGE", "20"))
    base_cooldown_seconds: float = float(os.getenv("HEIMDALL_COOLDOWN_SECONDS", "60"))
    loss_throttle_count: int = int(os.getenv("HEIMDALL_LOSS_THROTTLE", "2"))

    # ── Advisory (LLM) ──
    advisory_enabled: bool = _bool(os.getenv("HEIMDALL_ADVISORY_ENABLED", "true"))
    advisory_base_url: str = os.getenv("HEIMDALL_ADVISORY_URL", "https://openrouter.ai/api/v1")
    advisory_api_key: str = os.getenv("HEIMDALL_ADVISORY_API_KEY", "")
    advisory_model: str = os.getenv("HEIMDALL_ADVISORY_MODEL", "z-ai/glm-4.7-flash")
    advisory_fallback_model: str = os.getenv(
        "HEIMDALL_ADVISORY_FALLBACK_MODEL", "meta-llama/llama-3.1-8b-instruct:free"
    )
    advisory_timeout_seconds: float = float(os.getenv("HEIMDALL_ADVISORY_TIMEOUT", "30"))

    # ── Execution ──
    execution_attempts: int = int(os.getenv("HEIMDALL_EXEC_ATTEMPTS", "2"))
    execution_retry_delay: float = float(os.getenv("HEIMDALL_EXEC_RETRY_DELAY", "2"))
    execution_timeout_seconds: float = float(os.getenv("HEIMDALL_EXEC_TIMEOUT", "45"))

    # ── Self-tuning ──
    tune_every_n_trades: int = int(os.getenv("HEIMDALL_TUNE_EVERY", "5"))

    # ── Daily safety ──
    daily_loss_limit_pct: float = float(os.getenv("HEIMDALL_DAILY_LOSS_LIMIT", "10"))
    max_consecutive_losses: int = int(os.getenv("HEIMDALL_MAX_CONSEC_LOSSES", "4"))

    # ── Watchdog ──
    watchdog_timeout_seconds: float = float(os.getenv("HEIMDALL_WATCHDOG_TIMEOUT", "120"))
    watchdog_max_reconnects: int = int(os.getenv("HEIMDALL_WATCHDOG_RECONNECTS", "5"))

    # ── Mode ──
    dry_run: bool = _bool(os.getenv("HEIMDALL_DRY_RUN", "true"))
    log_level: str = os.getenv("HEIMDALL_LOG_LEVEL", "INFO")

    # ── Paths ──
    data_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("HEIMDALL_DATA_DIR", str(Path(__file__).parent / "data"))
        )
    )

    def __post_init__(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        """Fail fast on configuration that cannot possibly trade."""
        if not self.symbols:
            raise ConfigError("HEIMDALL_SYMBOLS is empty")
        if len(self.timeframes) < 2:
            raise ConfigError("at least two timeframes are required for consensus")
        if not self.dry_run and not self.hl_secret_key:
            raise ConfigError("HEIMDALL_HL_SECRET_KEY is required for live trading")

    @property
    def memory_file(self) -> Path:
        return self.data_dir / "trade_memory.json"

    @property
    def tuner_file(self) -> Path:
        return self.data_dir / "tuner_config.json"

    @property
    def breaker_file(self) -> Path:
        return self.data_dir / "circuit_breaker.json"

    @property
    def status_file(self) -> Path:
        return self.data_dir / "heimdall_status.json"
