import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List

import base58
from nacl.signing import SigningKey

from .config import LAMPORTS_PER_SOL
from .distributor import ratio_of

if TYPE_CHECKING:
    from .chain import ChainClient
    from .models import Session

logger = logging.getLogger(__name__)


# =========================
# KEYPAIRS
# =========================
@dataclass(frozen=True)
class Wallet:
    """ed25519 keypair stored as the 64-byte Solana secret key (seed || public key)."""

    secret: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.secret) != 64:
            raise ValueError(f"secret key must be 64 bytes, got {len(self.secret)}")

    @classmethod
    def generate(cls) -> "Wallet":
        sk = SigningKey.generate()
        return cls(bytes(sk) + sk.verify_key.encode())

    @classmethod
    def from_secret(cls, raw: bytes) -> "Wallet":
        """
        Supports:
        - 32-byte seed: public key is derived
        - 64-byte keypair: public half must match the seed
        """
        if len(raw) == 32:
            sk = SigningKey(raw)
            return cls(bytes(raw) + sk.verify_key.encode())
        if len(raw) == 64:
            pub = SigningKey(raw[:32]).verify_key.encode()
            if pub != raw[32:]:
                raise ValueError("secret key public half does not match its seed")
            return cls(bytes(raw))
        raise ValueError(f"unsupported secret key length {len(raw)}")

    @classmethod
    def from_b64(cls, value: str) -> "Wallet":
        return cls.from_secret(base64.b64decode(value))

    def to_b64(self) -> str:
        return base64.b64encode(self.secret).decode("ascii")

    @property
    def public_key(self) -> bytes:
        return self.secret[32:]

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode()


def generate() -> Wallet:
    return Wallet.generate()


# =========================
# POOL OPERATIONS
# =========================
def add_secondary(session: "Session") -> bool:
    if len(session.secondary_wallets) >= session.config.max_wallets:
        return False
    session.secondary_wallets.append(generate())
    return True


def ensure_secondaries(session: "Session") -> int:
    added = 0
    while add_secondary(session):
        added += 1
    return added


async def _drain_one(chain: "ChainClient", wallet: Wallet, main: Wallet) -> int:
    try:
        bal = await chain.get_balance(wallet.address)
        if bal <= 0:
            return 0
        await chain.transfer(wallet, main.address, bal)
        logger.info("[WALLET] moved %.6f SOL %s -> main", bal / LAMPORTS_PER_SOL, wallet.address)
        return bal
    except Exception as e:
        logger.warning("[WALLET] collect from %s failed: %s %r", wallet.address, type(e).__name__, e)
        return 0


async def collect(chain: "ChainClient", session: "Session") -> int:
    """Sweep every secondary balance into main. Per-wallet failures are logged and skipped."""
    moved: List[int] = await asyncio.gather(
        *(_drain_one(chain, w, session.main_wallet) for w in session.secondary_wallets)
    )
    return sum(moved)


async def reserve_extract(chain: "ChainClient", wallet: Wallet, ratio: float, destination: str) -> int:
    bal = await chain.get_balance(wallet.address)
    reserve = ratio_of(bal, ratio)
    if reserve <= 0:
        return 0
    await chain.transfer(wallet, destination, reserve)
    logger.info("[WALLET] reserved %.6f SOL from %s", reserve / LAMPORTS_PER_SOL, wallet.address)
    return reserve
