import math
import random
from dataclasses import dataclass, field
from typing import List, Optional

WEIGHT_MIN = 1
WEIGHT_MAX = 99


@dataclass
class DistributionPlan:
    balance: int
    reserve: int
    fee: int
    distributable: int
    shares: List[int] = field(default_factory=list)

    @property
    def leftover(self) -> int:
        # flooring slippage stays with the distributing wallet
        return self.distributable - sum(self.shares)


def ratio_of(amount: int, ratio: float) -> int:
    if amount <= 0 or ratio <= 0:
        return 0
    return math.floor(amount * ratio)


def split_by_weights(total: int, weights: List[int]) -> List[int]:
    s = sum(weights)
    if total <= 0 or s <= 0:
        return [0 for _ in weights]
    return [(total * w) // s for w in weights]


def split(total: int, n: int, rng: Optional[random.Random] = None) -> List[int]:
    """Randomly split `total` into `n` integer shares; sum(shares) <= total."""
    if n <= 0:
        return []
    r = rng or random
    weights = [r.randint(WEIGHT_MIN, WEIGHT_MAX) for _ in range(n)]
    return split_by_weights(total, weights)


def plan(
    balance: int,
    reserve_ratio: float,
    fee_ratio: float,
    apply_fee: bool,
    wallet_count: int,
    max_wallets: int,
    rng: Optional[random.Random] = None,
) -> DistributionPlan:
    # order is fixed: reserve, then fee on the remainder, then split
    reserve = ratio_of(balance, reserve_ratio)
    remainder = balance - reserve
    fee = ratio_of(remainder, fee_ratio) if apply_fee else 0
    distributable = remainder - fee
    shares = split(distributable, min(wallet_count, max_wallets), rng=rng)
    return DistributionPlan(
        balance=balance,
        reserve=reserve,
        fee=fee,
        distributable=distributable,
        shares=shares,
    )
