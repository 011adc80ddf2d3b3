from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import (
    DEFAULT_BUY_CYCLES,
    DEFAULT_DELAY_MS,
    DEFAULT_MAX_WALLETS,
    PRICE_CACHE_SECONDS,
)
from .wallets import Wallet


class AwaitingState(str, Enum):
    NONE = "none"
    MINT = "mint"
    RATE = "rate"
    WITHDRAW_ADDRESS = "withdraw"


@dataclass
class SessionConfig:
    max_wallets: int = DEFAULT_MAX_WALLETS
    buy_cycles: int = DEFAULT_BUY_CYCLES
    delay_ms: int = DEFAULT_DELAY_MS


@dataclass
class RunStats:
    initial_balance: int
    start_time: int
    action_count: int = 0
    final_balance: Optional[int] = None


@dataclass
class TokenInfo:
    mint: str
    name: str = ""
    symbol: str = ""
    price: Optional[float] = None
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None
    circulating_supply: Optional[float] = None
    total_supply: Optional[float] = None
    change_1h: Optional[float] = None
    change_24h: Optional[float] = None
    change_7d: Optional[float] = None
    rank: Optional[int] = None
    onchain_only: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TokenInfo":
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class PriceCache:
    timestamp: int
    data: TokenInfo

    def is_fresh(self, now: int) -> bool:
        return now - self.timestamp < PRICE_CACHE_SECONDS * 1000


@dataclass
class PanelRef:
    chat_id: int
    message_id: int


@dataclass
class Session:
    main_wallet: Wallet
    secondary_wallets: List[Wallet] = field(default_factory=list)
    token_mint: Optional[str] = None
    buy_rate: Optional[int] = None
    config: SessionConfig = field(default_factory=SessionConfig)
    awaiting: AwaitingState = AwaitingState.NONE
    withdraw_target: Optional[str] = None
    stats: Optional[RunStats] = None
    price_cache: Optional[PriceCache] = None
    panel: Optional[PanelRef] = None
    deposit_watcher_active: bool = False
    runner_active: bool = False

    @classmethod
    def fresh(cls) -> "Session":
        return cls(main_wallet=Wallet.generate(), awaiting=AwaitingState.MINT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "main": self.main_wallet.to_b64(),
            "secondaries": [w.to_b64() for w in self.secondary_wallets],
            "tokenMint": self.token_mint,
            "buyRate": self.buy_rate,
            "config": asdict(self.config),
            "awaiting": self.awaiting.value,
            "withdrawTarget": self.withdraw_target,
            "stats": asdict(self.stats) if self.stats else None,
            "priceCache": {
                "ts": self.price_cache.timestamp,
                "info": asdict(self.price_cache.data),
            } if self.price_cache else None,
            "panelMsg": asdict(self.panel) if self.panel else None,
            "depositWatcher": self.deposit_watcher_active,
            "runner": self.runner_active,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Session":
        cache = d.get("priceCache")
        stats = d.get("stats")
        panel = d.get("panelMsg")
        return cls(
            main_wallet=Wallet.from_b64(d["main"]),
            secondary_wallets=[Wallet.from_b64(s) for s in d.get("secondaries") or []],
            token_mint=d.get("tokenMint"),
            buy_rate=d.get("buyRate"),
            config=SessionConfig(**(d.get("config") or {})),
            awaiting=AwaitingState(d.get("awaiting") or AwaitingState.NONE.value),
            withdraw_target=d.get("withdrawTarget"),
            stats=RunStats(**stats) if stats else None,
            price_cache=PriceCache(int(cache["ts"]), TokenInfo.from_dict(cache["info"])) if cache else None,
            panel=PanelRef(**panel) if panel else None,
            deposit_watcher_active=bool(d.get("depositWatcher", False)),
            runner_active=bool(d.get("runner", False)),
        )
