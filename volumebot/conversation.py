import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from .errors import OracleUnavailable, TokenNotFound
from .models import AwaitingState, TokenInfo
from .oracle import PriceOracle, cached_metadata
from .store import SessionStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    IGNORED = "ignored"
    MINT_ACCEPTED = "mint_accepted"
    MINT_DEGRADED = "mint_degraded"
    MINT_REJECTED = "mint_rejected"
    RATE_SET = "rate_set"
    WITHDRAW_SET = "withdraw_set"


@dataclass
class Transition:
    outcome: Outcome
    state: AwaitingState
    token: Optional[TokenInfo] = None
    value: Optional[str] = None


class ConversationMachine:
    """
    Gates raw chat input by the session's awaiting state:
    NONE -> MINT -> RATE -> NONE, and NONE <-> WITHDRAW_ADDRESS.
    """

    def __init__(
        self,
        store: SessionStore,
        oracle: PriceOracle,
        on_rate_committed: Callable[[str], Awaitable[None]],
    ):
        self.store = store
        self.oracle = oracle
        self.on_rate_committed = on_rate_committed
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        key = str(session_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def expect(self, session_id: str, state: AwaitingState) -> None:
        async with self._lock(session_id):
            await self.store.mutate(session_id, lambda s: setattr(s, "awaiting", state))

    async def on_text(self, session_id: str, text: str) -> Transition:
        s = self.store.get(session_id)
        if s is None:
            return Transition(Outcome.IGNORED, AwaitingState.NONE)
        raw = (text or "").strip()
        if not raw or raw.startswith("/"):
            return Transition(Outcome.IGNORED, s.awaiting)

        async with self._lock(session_id):
            # re-read under the lock: one input resolves one pending state
            s = self.store.get(session_id)
            if s.awaiting == AwaitingState.MINT:
                return await self._resolve_mint(session_id, raw)
            if s.awaiting == AwaitingState.WITHDRAW_ADDRESS:
                s.withdraw_target = raw
                s.awaiting = AwaitingState.NONE
                await self.store.save()
                logger.info("[CHAT %s] withdraw target set", session_id)
                return Transition(Outcome.WITHDRAW_SET, s.awaiting, value=raw)
            return Transition(Outcome.IGNORED, s.awaiting)

    async def _resolve_mint(self, session_id: str, mint: str) -> Transition:
        s = self.store.get(session_id)
        try:
            info = await cached_metadata(self.oracle, s, mint)
        except TokenNotFound:
            logger.info("[CHAT %s] mint %s not found, discarded", session_id, mint)
            s.token_mint = None
            s.awaiting = AwaitingState.MINT
            await self.store.save()
            return Transition(Outcome.MINT_REJECTED, s.awaiting, value=mint)
        except OracleUnavailable as e:
            logger.warning("[CHAT %s] token data unavailable for %s: %s", session_id, mint, e)
            s.token_mint = mint
            s.awaiting = AwaitingState.RATE
            await self.store.save()
            return Transition(Outcome.MINT_DEGRADED, s.awaiting, value=mint)

        s.token_mint = mint
        s.awaiting = AwaitingState.RATE
        await self.store.save()
        logger.info("[CHAT %s] mint set to %s", session_id, mint)
        return Transition(Outcome.MINT_ACCEPTED, s.awaiting, token=info, value=mint)

    async def on_rate(self, session_id: str, rate: int) -> Transition:
        s = self.store.get(session_id)
        if s is None:
            return Transition(Outcome.IGNORED, AwaitingState.NONE)
        async with self._lock(session_id):
            s = self.store.get(session_id)
            if s.awaiting != AwaitingState.RATE or rate <= 0:
                return Transition(Outcome.IGNORED, s.awaiting)
            s.buy_rate = int(rate)
            s.awaiting = AwaitingState.NONE
            await self.store.save()
        logger.info("[CHAT %s] buy rate set to %d/min", session_id, rate)
        await self.on_rate_committed(session_id)
        return Transition(Outcome.RATE_SET, AwaitingState.NONE, value=str(rate))
