import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .chain import ChainClient
from .config import now_ms
from .errors import ChainError, OracleUnavailable, TokenNotFound
from .models import PriceCache, Session, TokenInfo

logger = logging.getLogger(__name__)


def _usd(md: Dict[str, Any], key: str) -> Optional[float]:
    v = md.get(key)
    if isinstance(v, dict):
        v = v.get("usd")
    return float(v) if isinstance(v, (int, float)) else None


def parse_coingecko(mint: str, j: Dict[str, Any]) -> TokenInfo:
    md = j.get("market_data") or {}
    rank = j.get("market_cap_rank")
    return TokenInfo(
        mint=mint,
        name=j.get("name") or mint,
        symbol=(j.get("symbol") or "").upper(),
        price=_usd(md, "current_price"),
        market_cap=_usd(md, "market_cap"),
        volume_24h=_usd(md, "total_volume"),
        circulating_supply=_usd(md, "circulating_supply"),
        total_supply=_usd(md, "total_supply"),
        change_1h=_usd(md, "price_change_percentage_1h_in_currency"),
        change_24h=_usd(md, "price_change_percentage_24h_in_currency"),
        change_7d=_usd(md, "price_change_percentage_7d"),
        rank=int(rank) if isinstance(rank, int) else None,
    )


class PriceOracle:
    """CoinGecko lookup with an on-chain existence fallback for unlisted mints."""

    def __init__(self, session: aiohttp.ClientSession, chain: ChainClient, base_url: str, timeout_seconds: float = 10.0):
        self.session = session
        self.chain = chain
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _onchain_fallback(self, mint: str) -> TokenInfo:
        try:
            supply = await self.chain.get_token_supply(mint)
        except ChainError as e:
            raise TokenNotFound(mint) from e
        if supply <= 0:
            raise TokenNotFound(mint)
        return TokenInfo(
            mint=mint,
            name=mint,
            symbol=mint[:6].upper(),
            circulating_supply=float(supply),
            total_supply=float(supply),
            onchain_only=True,
        )

    async def fetch_metadata(self, mint: str) -> TokenInfo:
        url = f"{self.base_url}/{mint}"
        try:
            async with self.session.get(url, timeout=self.timeout) as r:
                if r.status == 404:
                    return await self._onchain_fallback(mint)
                if r.status != 200:
                    raise OracleUnavailable(f"Coingecko error {r.status}")
                j = await r.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OracleUnavailable(f"Network error while fetching token data: {type(e).__name__}") from e
        except ValueError as e:
            raise OracleUnavailable("Coingecko returned a malformed body") from e
        if not isinstance(j, dict):
            raise OracleUnavailable("Coingecko returned a non-object body")
        return parse_coingecko(mint, j)


async def cached_metadata(oracle: PriceOracle, session: Session, mint: Optional[str] = None) -> TokenInfo:
    """Per-session 5 minute cache. Raises whatever fetch_metadata raises on a miss."""
    mint = mint or session.token_mint
    if not mint:
        raise TokenNotFound("")
    now = now_ms()
    cache = session.price_cache
    if cache and cache.data.mint == mint and cache.is_fresh(now):
        return cache.data
    info = await oracle.fetch_metadata(mint)
    session.price_cache = PriceCache(timestamp=now, data=info)
    return info
