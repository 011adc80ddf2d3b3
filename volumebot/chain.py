import asyncio
import base64
import logging
from typing import Any, Dict, List, Protocol

import aiohttp
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction, VersionedTransaction

from .config import LAMPORTS_PER_SOL
from .errors import ChainError, SwapError
from .wallets import Wallet

logger = logging.getLogger(__name__)

CONFIRM_TIMEOUT_SECONDS = 60.0
CONFIRM_POLL_SECONDS = 1.0


class ChainClient(Protocol):
    async def get_balance(self, address: str) -> int: ...

    async def get_asset_balance(self, address: str, mint: str) -> float: ...

    async def get_token_supply(self, mint: str) -> int: ...

    async def transfer(self, wallet: Wallet, to_address: str, lamports: int) -> str: ...

    async def swap(self, in_mint: str, out_mint: str, lamports: int, signer: Wallet) -> str: ...


def to_keypair(wallet: Wallet) -> Keypair:
    return Keypair.from_bytes(wallet.secret)


# =========================
# SOLANA (JSON-RPC + swap API)
# =========================
class SolanaChainClient:
    def __init__(
        self,
        rpc_url: str,
        session: aiohttp.ClientSession,
        swap_api_url: str,
        slippage: int = 2,
        priority_fee_sol: float = 0.000005,
        timeout_seconds: float = 10.0,
    ):
        self.rpc_url = rpc_url
        self.session = session
        self.swap_api_url = swap_api_url
        self.slippage = slippage
        self.priority_fee_sol = priority_fee_sol
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._req_id = 0

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._req_id += 1
        payload = {"jsonrpc": "2.0", "id": self._req_id, "method": method, "params": params}
        try:
            async with self.session.post(self.rpc_url, json=payload, timeout=self.timeout) as r:
                data = await r.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainError(f"RPC {method} failed: {type(e).__name__} {e!r}") from e
        if not isinstance(data, dict):
            raise ChainError(f"RPC {method}: unexpected response {data!r}")
        if data.get("error"):
            raise ChainError(f"RPC {method} error: {data['error']}")
        return data.get("result")

    async def get_balance(self, address: str) -> int:
        res = await self._rpc("getBalance", [address, {"commitment": "confirmed"}])
        return int((res or {}).get("value", 0))

    async def get_asset_balance(self, address: str, mint: str) -> float:
        try:
            res = await self._rpc(
                "getTokenAccountsByOwner",
                [address, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
            )
        except ChainError as e:
            logger.debug("[CHAIN] token balance %s/%s unavailable: %s", address, mint, e)
            return 0.0
        total = 0.0
        for acc in (res or {}).get("value", []) or []:
            info = (((acc.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
            ui = (info.get("tokenAmount") or {}).get("uiAmount")
            if isinstance(ui, (int, float)):
                total += float(ui)
        return total

    async def get_token_supply(self, mint: str) -> int:
        res = await self._rpc("getTokenSupply", [mint])
        return int(((res or {}).get("value") or {}).get("amount") or 0)

    async def latest_blockhash(self) -> Hash:
        res = await self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        return Hash.from_string(res["value"]["blockhash"])

    async def send_raw(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        return await self._rpc("sendTransaction", [encoded, {"encoding": "base64", "skipPreflight": True}])

    async def confirm(self, signature: str, timeout: float = CONFIRM_TIMEOUT_SECONDS) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            res = await self._rpc("getSignatureStatuses", [[signature]])
            status = ((res or {}).get("value") or [None])[0]
            if status:
                if status.get("err"):
                    raise ChainError(f"transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            await asyncio.sleep(CONFIRM_POLL_SECONDS)
        raise ChainError(f"transaction {signature} not confirmed after {timeout:.0f}s")

    async def transfer(self, wallet: Wallet, to_address: str, lamports: int) -> str:
        kp = to_keypair(wallet)
        ix = transfer(TransferParams(
            from_pubkey=kp.pubkey(),
            to_pubkey=Pubkey.from_string(to_address),
            lamports=int(lamports),
        ))
        msg = MessageV0.try_compile(kp.pubkey(), [ix], [], await self.latest_blockhash())
        tx = VersionedTransaction(msg, [kp])
        sig = await self.send_raw(bytes(tx))
        await self.confirm(sig)
        return sig

    async def _fetch_swap_txn(self, in_mint: str, out_mint: str, lamports: int, payer: str) -> Dict[str, Any]:
        params = {
            "from": in_mint,
            "to": out_mint,
            "fromAmount": str(lamports / LAMPORTS_PER_SOL),
            "slippage": str(self.slippage),
            "payer": payer,
            "priorityFee": str(self.priority_fee_sol),
        }
        try:
            async with self.session.get(self.swap_api_url, params=params, timeout=self.timeout) as r:
                data = await r.json(content_type=None)
                status = r.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SwapError(f"swap quote failed: {type(e).__name__} {e!r}") from e
        if status != 200 or not isinstance(data, dict) or not data.get("txn"):
            raise SwapError(f"swap API error {status}: {data}")
        return data

    async def swap(self, in_mint: str, out_mint: str, lamports: int, signer: Wallet) -> str:
        kp = to_keypair(signer)
        data = await self._fetch_swap_txn(in_mint, out_mint, lamports, str(kp.pubkey()))
        raw = base64.b64decode(data["txn"])

        if data.get("type") == "legacy" or data.get("forceLegacy"):
            tx = Transaction.from_bytes(raw)
            tx.sign([kp], await self.latest_blockhash())
            signed = bytes(tx)
        else:
            vtx = VersionedTransaction.from_bytes(raw)
            signed = bytes(VersionedTransaction(vtx.message, [kp]))

        try:
            sig = await self.send_raw(signed)
            await self.confirm(sig)
        except ChainError as e:
            raise SwapError(str(e)) from e
        return sig
