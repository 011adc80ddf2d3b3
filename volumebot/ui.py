from typing import Any, Dict, List, Optional, Tuple

from .config import LAMPORTS_PER_SOL, RATE_CHOICES
from .models import Session, TokenInfo
from .stats import elapsed_seconds, profit


# =========================
# UI BUILDERS
# =========================
def kb_inline(rows: List[List[Tuple[str, str]]]) -> Dict[str, Any]:
    return {"inline_keyboard": [[{"text": t, "callback_data": d} for (t, d) in row] for row in rows]}


def panel_kb() -> Dict[str, Any]:
    return kb_inline([
        [("🆕 New", "create"), ("➕ Add", "add")],
        [("💳 Set Mint", "setMint"), ("⚙️ Config", "cfg")],
        [("🚀 Run", "run"), ("🛑 Stop", "stop")],
        [("🔍 Main", "showMain"), ("ℹ️ Stats", "status")],
        [("✏️ Withdraw Addr", "setWithdraw")],
        [("💸 Sell All", "sellAll"), ("🏦 Confirm WD", "confirmWithdraw")],
    ])


def rate_kb() -> Dict[str, Any]:
    return kb_inline([[(f"{n}", f"rate_{n}") for n in RATE_CHOICES]])


def _num(v: Optional[float], fmt: str = "{:,.2f}") -> str:
    return fmt.format(v) if v is not None else "–"


def render_token_header(info: TokenInfo) -> str:
    if info.onchain_only:
        return "✅ Token found on-chain (no Coingecko data yet)"
    return (
        f"🔎 {info.name} ({info.symbol})\n"
        f"Rank: #{info.rank if info.rank is not None else '–'}  Price: ${_num(info.price, '{:.6f}')}\n"
        f"MCap: ${_num(info.market_cap, '{:,.0f}')}  Vol24h: ${_num(info.volume_24h, '{:,.0f}')}"
    )


def render_token_block(info: Optional[TokenInfo]) -> str:
    if info is None:
        return "\n(no token data)"
    return (
        f"\n{info.name} ({info.symbol})\n"
        f"Rank:#{info.rank if info.rank is not None else '–'} Price:${_num(info.price, '{:.6f}')}\n"
        f"MCap:${_num(info.market_cap, '{:,.0f}')} Vol24h:${_num(info.volume_24h, '{:,.0f}')}\n"
        f"Circ:{_num(info.circulating_supply, '{:,.0f}')} Total:{_num(info.total_supply, '{:,.0f}')}\n"
        f"Δ1h:{_num(info.change_1h)}% Δ24h:{_num(info.change_24h)}% Δ7d:{_num(info.change_7d)}%"
    )


def render_panel(
    s: Session,
    balances: List[Tuple[str, int, float]],
    token_info: Optional[TokenInfo],
) -> str:
    c = s.config
    lines = [f"{addr}\nSOL:{sol / LAMPORTS_PER_SOL:.4f} | TOK:{tok:.4f}" for (addr, sol, tok) in balances]
    wallet_list = "\n\n".join(lines) if lines else "(none)"

    pr = "n/a"
    if s.stats is not None:
        p = profit(s.stats)
        if p is not None:
            pr = f"{p / LAMPORTS_PER_SOL:.4f}"

    token_block = render_token_block(token_info) if s.token_mint else ""
    job = "running" if s.runner_active else ("waiting for deposit" if s.deposit_watcher_active else "idle")

    return (
        "📊 Volume Bot Panel\n\n"
        "⚙️ Settings\n"
        f"• Max wallets: {c.max_wallets}\n"
        f"• Cycles:      {c.buy_cycles}\n"
        f"• Delay:       {c.delay_ms} ms\n"
        f"• Rate:        {s.buy_rate or '(unset)'} buys/min\n"
        f"• Job:         {job}\n\n"
        f"💳 Mint: {s.token_mint or 'unset'}{token_block}\n\n"
        f"🔑 Secondaries ({len(s.secondary_wallets)}/{c.max_wallets}):\n"
        f"{wallet_list}\n\n"
        f"💹 Profit: {pr} SOL\n\n"
        f"🏦 Withdraw→ {s.withdraw_target or '(none)'}\n"
    )


def render_stats(s: Session) -> str:
    if s.stats is None:
        return "ℹ️ No stats yet"
    p = profit(s.stats)
    pr = f"{p / LAMPORTS_PER_SOL:.4f}" if p is not None else "n/a"
    return f"⏱{elapsed_seconds(s.stats)}s ⚡{s.stats.action_count} trades\n💹{pr} SOL"


def render_main(s: Session, sol: int, tok: float) -> str:
    return f"🔑 Main Wallet\n{s.main_wallet.address}\n\n💰 SOL:{sol / LAMPORTS_PER_SOL:.4f} TOK:{tok}"
