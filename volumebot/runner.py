import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from .chain import ChainClient
from .config import LAMPORTS_PER_SOL, SOL_MINT
from .distributor import split
from .models import Session
from .stats import StatsTracker
from .wallets import Wallet

logger = logging.getLogger(__name__)


# =========================
# CANCELLATION
# =========================
class CancelToken:
    """Cooperative stop signal. The runner only looks at it between legs."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0 or self.cancelled:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# =========================
# PACING / CYCLE POLICIES
# =========================
@dataclass(frozen=True)
class Pacing:
    legs_per_cycle: int
    delay_ms: float

    @classmethod
    def by_rate(cls, buy_rate: int) -> "Pacing":
        rate = max(1, int(buy_rate))
        return cls(legs_per_cycle=rate, delay_ms=60_000 / rate)

    @classmethod
    def by_count(cls, buy_cycles: int, delay_ms: int) -> "Pacing":
        return cls(legs_per_cycle=max(1, int(buy_cycles)), delay_ms=max(0, delay_ms))

    @classmethod
    def for_session(cls, session: Session, mode: str) -> "Pacing":
        if mode == "rate" and session.buy_rate:
            return cls.by_rate(session.buy_rate)
        return cls.by_count(session.config.buy_cycles, session.config.delay_ms)


class CyclePolicy(Protocol):
    name: str

    def buy_legs(self, balance: int, spend_fraction: float, legs_per_cycle: int) -> List[int]: ...


class UniformLegs:
    name = "uniform"

    def buy_legs(self, balance: int, spend_fraction: float, legs_per_cycle: int) -> List[int]:
        legs = max(1, legs_per_cycle)
        amount = int(balance * spend_fraction / legs)
        return [amount] * legs


class RandomTwoLegs:
    name = "random_two_legs"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng

    def buy_legs(self, balance: int, spend_fraction: float, legs_per_cycle: int) -> List[int]:
        return split(int(balance * spend_fraction), 2, rng=self.rng)


def make_policy(name: str, rng: Optional[random.Random] = None) -> CyclePolicy:
    if name == RandomTwoLegs.name:
        return RandomTwoLegs(rng)
    if name == UniformLegs.name:
        return UniformLegs()
    raise ValueError(f"unknown cycle policy {name!r}")


# =========================
# RUNNER
# =========================
@dataclass
class RunResult:
    cycles: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False


class TradeCycleRunner:
    def __init__(
        self,
        chain: ChainClient,
        stats: StatsTracker,
        persist: Callable[[], Awaitable[None]],
        policy: CyclePolicy,
        pacing: Pacing,
        stop_ratio: float,
        spend_fraction: float = 0.8,
        sell_fraction: float = 0.8,
        base_mint: str = SOL_MINT,
    ):
        self.chain = chain
        self.stats = stats
        self.persist = persist
        self.policy = policy
        self.pacing = pacing
        self.stop_ratio = stop_ratio
        self.spend_fraction = spend_fraction
        self.sell_fraction = sell_fraction
        self.base_mint = base_mint

    async def _leg(self, in_mint: str, out_mint: str, amount: int, wallet: Wallet, token: CancelToken) -> None:
        await self.chain.swap(in_mint, out_mint, amount, wallet)
        self.stats.record_action()
        await self.persist()
        await token.sleep(self.pacing.delay_ms / 1000)

    async def run_wallet(self, wallet: Wallet, mint: str, token: CancelToken) -> int:
        original = balance = await self.chain.get_balance(wallet.address)
        floor_balance = self.stop_ratio * original
        cycles = 0

        while balance > floor_balance and not token.cancelled:
            spent = 0
            for amount in self.policy.buy_legs(balance, self.spend_fraction, self.pacing.legs_per_cycle):
                if token.cancelled:
                    return cycles
                if amount <= 0:
                    continue
                await self._leg(self.base_mint, mint, amount, wallet, token)
                spent += amount

            if spent <= 0:
                logger.info("[RUN] %s balance too small to trade, moving on", wallet.address)
                return cycles
            if token.cancelled:
                return cycles

            sell_amount = int(spent * self.sell_fraction)
            if sell_amount > 0:
                await self._leg(mint, self.base_mint, sell_amount, wallet, token)

            cycles += 1
            balance = await self.chain.get_balance(wallet.address)
            logger.debug(
                "[RUN] %s cycle %d done, balance %.6f SOL",
                wallet.address, cycles, balance / LAMPORTS_PER_SOL,
            )
        return cycles

    async def run(self, wallets: List[Wallet], mint: str, token: CancelToken) -> RunResult:
        result = RunResult()
        for wallet in wallets:
            if token.cancelled:
                break
            result.cycles[wallet.address] = await self.run_wallet(wallet, mint, token)
        result.cancelled = token.cancelled
        return result
