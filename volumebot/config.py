import base64
import os
import time
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# =========================
# CONSTANTS
# =========================
LAMPORTS_PER_SOL = 1_000_000_000
SOL_MINT = "So11111111111111111111111111111111111111112"

MAX_WALLETS = 50
RATE_CHOICES = (10, 20, 30, 40, 50)
PRICE_CACHE_SECONDS = 300

DEFAULT_MAX_WALLETS = 5
DEFAULT_BUY_CYCLES = 3
DEFAULT_DELAY_MS = 2000

CYCLE_POLICIES = ("uniform", "random_two_legs")
PACING_MODES = ("rate", "count")


def now_ms() -> int:
    return int(time.time() * 1000)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip() not in ("0", "false", "False", "")


# =========================
# ENV / CONFIG
# =========================
@dataclass(frozen=True)
class Settings:
    telegram_token: str
    rpc_url: str
    db_key: bytes
    fee_wallet: str
    admin_username: str

    data_dir: str = ".data-voluminousy"
    swap_api_url: str = "https://swap-v2.solanatracker.io/swap"
    coingecko_url: str = "https://api.coingecko.com/api/v3/coins/solana/contract"

    http_timeout_seconds: float = 10.0
    tg_longpoll_timeout: int = 30
    tg_longpoll_grace: int = 15

    min_deposit_lamports: int = LAMPORTS_PER_SOL // 2
    stop_ratio: float = 0.4
    reserve_ratio: float = 0.38
    fee_ratio: float = 0.01
    apply_flat_fee: bool = True

    cycle_policy: str = "uniform"
    pacing_mode: str = "rate"
    spend_fraction: float = 0.8
    sell_fraction: float = 0.8

    deposit_poll_seconds: float = 5.0
    status_refresh_seconds: float = 30.0

    swap_slippage: int = 2
    swap_priority_fee_sol: float = 0.000005

    @property
    def db_file(self) -> str:
        return os.path.join(self.data_dir, "sessions.enc")


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    load_dotenv(dotenv_path=dotenv_path)

    token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    rpc_url = os.getenv("RPC_URL", "").strip()
    fee_wallet = os.getenv("FEE_WALLET", "").strip()
    admin = os.getenv("ADMIN_USERNAME", "").strip().lstrip("@")
    raw_key = os.getenv("DB_KEY", "").strip()

    missing = [name for name, value in (
        ("TELEGRAM_BOT_TOKEN", token),
        ("RPC_URL", rpc_url),
        ("DB_KEY", raw_key),
        ("FEE_WALLET", fee_wallet),
        ("ADMIN_USERNAME", admin),
    ) if not value]
    if missing:
        raise SystemExit(f"Missing env: {', '.join(missing)}")

    try:
        db_key = base64.b64decode(raw_key, validate=True)
    except ValueError:
        db_key = b""
    if len(db_key) != 32:
        raise SystemExit(
            "DB_KEY must be 32 random bytes, base64 encoded. Generate via: python -c "
            '"import os, base64; print(base64.b64encode(os.urandom(32)).decode())"'
        )

    cycle_policy = os.getenv("CYCLE_POLICY", "uniform").strip()
    if cycle_policy not in CYCLE_POLICIES:
        raise SystemExit(f"CYCLE_POLICY must be one of {CYCLE_POLICIES}, got {cycle_policy!r}")
    pacing_mode = os.getenv("PACING_MODE", "rate").strip()
    if pacing_mode not in PACING_MODES:
        raise SystemExit(f"PACING_MODE must be one of {PACING_MODES}, got {pacing_mode!r}")

    return Settings(
        telegram_token=token,
        rpc_url=rpc_url,
        db_key=db_key,
        fee_wallet=fee_wallet,
        admin_username=admin,
        data_dir=os.getenv("DATA_DIR", ".data-voluminousy").strip(),
        swap_api_url=os.getenv("SWAP_API_URL", "https://swap-v2.solanatracker.io/swap").strip(),
        coingecko_url=os.getenv("COINGECKO_URL", "https://api.coingecko.com/api/v3/coins/solana/contract").strip(),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")),
        tg_longpoll_timeout=int(os.getenv("TG_LONGPOLL_TIMEOUT", "30")),
        tg_longpoll_grace=int(os.getenv("TG_LONGPOLL_GRACE", "15")),
        min_deposit_lamports=int(float(os.getenv("MIN_DEPOSIT_SOL", "0.5")) * LAMPORTS_PER_SOL),
        stop_ratio=float(os.getenv("STOP_RATIO", "0.4")),
        reserve_ratio=float(os.getenv("PLATFORM_RESERVE_RATIO", "0.38")),
        fee_ratio=float(os.getenv("FEE_RATIO", "0.01")),
        apply_flat_fee=_env_flag("APPLY_FLAT_FEE", "1"),
        cycle_policy=cycle_policy,
        pacing_mode=pacing_mode,
        spend_fraction=float(os.getenv("SPEND_FRACTION", "0.8")),
        sell_fraction=float(os.getenv("SELL_FRACTION", "0.8")),
        deposit_poll_seconds=float(os.getenv("DEPOSIT_POLL_SECONDS", "5")),
        status_refresh_seconds=float(os.getenv("STATUS_REFRESH_SECONDS", "30")),
        swap_slippage=int(os.getenv("SWAP_SLIPPAGE", "2")),
        swap_priority_fee_sol=float(os.getenv("SWAP_PRIORITY_FEE_SOL", "0.000005")),
    )
