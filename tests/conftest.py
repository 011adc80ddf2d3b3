"""Shared fakes for the chain client, price oracle and presentation sink."""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from volumebot.config import Settings
from volumebot.errors import ChainError, SwapError
from volumebot.models import Session, TokenInfo
from volumebot.store import SessionStore
from volumebot.wallets import Wallet


class FakeChain:
    """In-memory ledger.

    balance_script: address -> successive get_balance results; the last value repeats.
    swap_effect: optional callable(in_mint, out_mint, amount, signer) that mutates balances.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None) -> None:
        self.balances: Dict[str, int] = dict(balances or {})
        self.balance_script: Dict[str, List[int]] = {}
        self.token_balances: Dict[Tuple[str, str], float] = {}
        self.supply: Dict[str, int] = {}
        self.transfers: List[Tuple[str, str, int]] = []
        self.swaps: List[Tuple[str, str, int, str]] = []
        self.balance_reads: Dict[str, int] = {}
        self.fail_transfer_from: set = set()
        self.fail_swap_at: Optional[int] = None
        self.on_swap: Optional[Callable[[int], None]] = None
        self.swap_effect: Optional[Callable[[str, str, int, Wallet], None]] = None

    async def get_balance(self, address: str) -> int:
        self.balance_reads[address] = self.balance_reads.get(address, 0) + 1
        script = self.balance_script.get(address)
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        return self.balances.get(address, 0)

    async def get_asset_balance(self, address: str, mint: str) -> float:
        return self.token_balances.get((address, mint), 0.0)

    async def get_token_supply(self, mint: str) -> int:
        if mint not in self.supply:
            raise ChainError("invalid mint")
        return self.supply[mint]

    async def transfer(self, wallet: Wallet, to_address: str, lamports: int) -> str:
        if wallet.address in self.fail_transfer_from:
            raise ChainError(f"transfer from {wallet.address} failed")
        self.transfers.append((wallet.address, to_address, lamports))
        self.balances[wallet.address] = self.balances.get(wallet.address, 0) - lamports
        self.balances[to_address] = self.balances.get(to_address, 0) + lamports
        return f"sig-transfer-{len(self.transfers)}"

    async def swap(self, in_mint: str, out_mint: str, lamports: int, signer: Wallet) -> str:
        self.swaps.append((in_mint, out_mint, lamports, signer.address))
        n = len(self.swaps)
        if self.on_swap is not None:
            self.on_swap(n)
        if self.fail_swap_at is not None and n == self.fail_swap_at:
            raise SwapError("route not found")
        if self.swap_effect is not None:
            self.swap_effect(in_mint, out_mint, lamports, signer)
        return f"sig-swap-{n}"


class FakeOracle:
    def __init__(self, results: Optional[Dict[str, object]] = None) -> None:
        self.results: Dict[str, object] = dict(results or {})
        self.calls: List[str] = []

    async def fetch_metadata(self, mint: str) -> TokenInfo:
        self.calls.append(mint)
        res = self.results.get(mint)
        if isinstance(res, BaseException):
            raise res
        if res is None:
            return TokenInfo(mint=mint, name="Token", symbol="TOK", price=1.0)
        return res


class FakeSink:
    def __init__(self) -> None:
        self.summaries: List[Tuple[str, str]] = []
        self.prompts: List[Tuple[str, str]] = []

    async def push_summary(self, session_id: str, text: str) -> None:
        self.summaries.append((session_id, text))

    async def prompt_user(self, session_id: str, text: str) -> None:
        self.prompts.append((session_id, text))


@pytest.fixture
def fee_wallet() -> Wallet:
    return Wallet.generate()


@pytest.fixture
def settings(tmp_path, fee_wallet) -> Settings:
    return Settings(
        telegram_token="test-token",
        rpc_url="http://127.0.0.1:8899",
        db_key=os.urandom(32),
        fee_wallet=fee_wallet.address,
        admin_username="admin",
        data_dir=str(tmp_path / "data"),
        pacing_mode="count",
        deposit_poll_seconds=0.0,
        status_refresh_seconds=3600.0,
    )


@pytest.fixture
def store(settings) -> SessionStore:
    st = SessionStore(settings.db_file, settings.db_key)
    st.load()
    return st


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def session_in_store(store) -> Tuple[str, Session]:
    s = Session.fresh()
    store.put("42", s)
    return "42", s
