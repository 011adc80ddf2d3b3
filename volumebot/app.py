import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .chain import ChainClient
from .config import LAMPORTS_PER_SOL, MAX_WALLETS, SOL_MINT, Settings
from .conversation import ConversationMachine, Outcome
from .distributor import plan as plan_distribution
from .errors import ChainError, TelegramError, VolumeBotError
from .models import AwaitingState, Session
from .oracle import PriceOracle, cached_metadata
from .runner import CancelToken, Pacing, TradeCycleRunner, make_policy
from .scheduler import RUNNER, JobScheduler, PresentationSink
from .stats import StatsTracker
from .store import SessionStore
from .telegram_api import TelegramAPI
from .ui import panel_kb, rate_kb, render_main, render_panel, render_stats, render_token_header
from . import wallets

logger = logging.getLogger(__name__)

# lamports left on main to pay for the withdraw transaction itself
WITHDRAW_FEE_CUSHION = 5_000
UPDATES_RETRY_SECONDS = 3.0


# =========================
# APP STATE
# =========================
class App:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        chain: ChainClient,
        oracle: PriceOracle,
        sink: PresentationSink,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.store = store
        self.chain = chain
        self.oracle = oracle
        self.sink = sink
        self.rng = rng

        self.scheduler = JobScheduler(
            store=store,
            chain=chain,
            sink=sink,
            run_job=self.run_volume,
            render_summary=self.summary,
            min_deposit_lamports=settings.min_deposit_lamports,
            poll_seconds=settings.deposit_poll_seconds,
            refresh_seconds=settings.status_refresh_seconds,
        )
        self.conversation = ConversationMachine(store, oracle, self.on_rate_committed)

        # chat_id -> telegram username, learned from inbound updates
        self.usernames: Dict[str, str] = {}

    def is_admin(self, session_id) -> bool:
        name = self.usernames.get(str(session_id))
        return bool(name) and name == self.settings.admin_username

    def remember_user(self, session_id, username: Optional[str]) -> None:
        if username:
            self.usernames[str(session_id)] = username

    # -------------------------
    # lifecycle
    # -------------------------
    async def start(self, session_id) -> Session:
        sid = str(session_id)
        s = self.store.get(sid)
        if s is None:
            s = Session.fresh()
            self.store.put(sid, s)
            await self.store.save()
            logger.info("[CHAT %s] session created, main %s", sid, s.main_wallet.address)
            return s
        await self.conversation.expect(sid, AwaitingState.MINT)
        return s

    async def reset(self, session_id) -> Session:
        """Drain the old wallets best-effort, then replace the session wholesale."""
        sid = str(session_id)
        await self.scheduler.cancel_all(sid)
        old = self.store.get(sid)
        if old is not None:
            logger.info("[CHAT %s] reset, collecting balances", sid)
            await wallets.collect(self.chain, old)
            try:
                await wallets.reserve_extract(self.chain, old.main_wallet, self.settings.reserve_ratio, self.settings.fee_wallet)
            except ChainError as e:
                logger.warning("[CHAT %s] reserve extraction failed: %s", sid, e)

        s = Session.fresh()
        if old is not None:
            s.panel = old.panel
        self.store.put(sid, s)
        await self.store.save()
        return s

    async def add_wallet(self, session_id) -> bool:
        s = self.store.get(str(session_id))
        added = wallets.add_secondary(s)
        if added:
            await self.store.save()
        return added

    async def set_config(self, session_id, key: str, value: int) -> bool:
        s = self.store.get(str(session_id))
        # never below the wallets already held
        if key == "max_wallets" and max(1, len(s.secondary_wallets)) <= value <= MAX_WALLETS:
            s.config.max_wallets = value
        elif key == "buy_cycles" and value > 0:
            s.config.buy_cycles = value
        elif key == "delay_ms" and value >= 0:
            s.config.delay_ms = value
        else:
            return False
        await self.store.save()
        return True

    # -------------------------
    # jobs
    # -------------------------
    async def on_rate_committed(self, session_id) -> None:
        await self.scheduler.arm_deposit_watcher(session_id, bypass=self.is_admin(session_id))

    async def run(self, session_id) -> str:
        s = self.store.get(str(session_id))
        if not s.token_mint:
            return "❌ Token mint not set"
        if self.scheduler.active_kind(session_id) == RUNNER:
            return "ℹ️ Volume run already active"
        await self.scheduler.arm_deposit_watcher(session_id, bypass=self.is_admin(session_id))
        return f"⏳ Waiting for deposit of ≥{self.settings.min_deposit_lamports / LAMPORTS_PER_SOL} SOL…"

    async def stop(self, session_id) -> str:
        kind = await self.scheduler.stop(session_id)
        if kind is None:
            return "ℹ️ No active run"
        if kind == RUNNER:
            return "🛑 Volume stopping after the current trade"
        return "🛑 Deposit watcher stopped"

    async def run_volume(self, session_id: str, token: CancelToken) -> None:
        s = self.store.get(session_id)
        if not s.token_mint:
            await self.sink.prompt_user(session_id, "❌ Token mint not set")
            return

        main = s.main_wallet
        if wallets.ensure_secondaries(s):
            await self.store.save()

        bal0 = await self.chain.get_balance(main.address)
        plan = plan_distribution(
            bal0,
            self.settings.reserve_ratio,
            self.settings.fee_ratio,
            self.settings.apply_flat_fee,
            len(s.secondary_wallets),
            s.config.max_wallets,
            rng=self.rng,
        )
        logger.info("[RUN %s] starting, balance %.4f SOL", session_id, bal0 / LAMPORTS_PER_SOL)

        if plan.reserve > 0:
            await self.chain.transfer(main, self.settings.fee_wallet, plan.reserve)
            logger.info("[RUN %s] reserved %.6f SOL", session_id, plan.reserve / LAMPORTS_PER_SOL)
        if plan.fee > 0:
            await self.chain.transfer(main, self.settings.fee_wallet, plan.fee)
            logger.info("[RUN %s] fee %.6f SOL", session_id, plan.fee / LAMPORTS_PER_SOL)
        for wallet, share in zip(s.secondary_wallets, plan.shares):
            if share > 0:
                await self.chain.transfer(main, wallet.address, share)
        logger.info("[RUN %s] split to %d wallets", session_id, len(plan.shares))

        tracker = StatsTracker(s)
        tracker.begin(plan.distributable)
        await self.store.save()
        await self.sink.prompt_user(session_id, "🚀 Volume started! Monitoring trades…")

        runner = TradeCycleRunner(
            chain=self.chain,
            stats=tracker,
            persist=self.store.save,
            policy=make_policy(self.settings.cycle_policy, self.rng),
            pacing=Pacing.for_session(s, self.settings.pacing_mode),
            stop_ratio=self.settings.stop_ratio,
            spend_fraction=self.settings.spend_fraction,
            sell_fraction=self.settings.sell_fraction,
        )
        try:
            result = await runner.run(s.secondary_wallets[:s.config.max_wallets], s.token_mint, token)
        finally:
            try:
                tracker.finish(await self.chain.get_balance(main.address))
            except ChainError as e:
                logger.warning("[RUN %s] final balance unavailable: %s", session_id, e)
            await self.store.save()

        if result.cancelled:
            await self.sink.prompt_user(session_id, "🛑 Volume stopped")
        else:
            await self.sink.prompt_user(session_id, "✅ Volume run completed")
        logger.info("[RUN %s] finished, cycles %s", session_id, result.cycles)

    # -------------------------
    # views
    # -------------------------
    async def _wallet_line(self, address: str, mint: Optional[str]) -> Tuple[str, int, float]:
        try:
            sol = await self.chain.get_balance(address)
            tok = await self.chain.get_asset_balance(address, mint) if mint else 0.0
        except ChainError as e:
            logger.debug("[VIEW] balance for %s unavailable: %s", address, e)
            return address, 0, 0.0
        return address, sol, tok

    async def summary(self, session_id) -> str:
        s = self.store.get(str(session_id))
        balances: List[Tuple[str, int, float]] = await asyncio.gather(
            *(self._wallet_line(w.address, s.token_mint) for w in s.secondary_wallets)
        )
        info = None
        if s.token_mint:
            try:
                info = await cached_metadata(self.oracle, s)
            except VolumeBotError as e:
                logger.debug("[VIEW] token data unavailable: %s", e)
        return render_panel(s, balances, info)

    async def stats_text(self, session_id) -> str:
        return render_stats(self.store.get(str(session_id)))

    async def show_main(self, session_id) -> str:
        s = self.store.get(str(session_id))
        _, sol, tok = await self._wallet_line(s.main_wallet.address, s.token_mint)
        return render_main(s, sol, tok)

    # -------------------------
    # fund exits
    # -------------------------
    async def sell_all(self, session_id) -> str:
        s = self.store.get(str(session_id))
        if not s.token_mint:
            return "❌ Mint not set"
        if self.scheduler.active_kind(session_id) is not None:
            return "ℹ️ Stop the active job first"
        failed = 0
        for w in s.secondary_wallets:
            try:
                tok = await self.chain.get_asset_balance(w.address, s.token_mint)
                if tok > 0:
                    await self.chain.swap(s.token_mint, SOL_MINT, int(tok * LAMPORTS_PER_SOL), w)
                sol = await self.chain.get_balance(w.address)
                if sol > 0:
                    await self.chain.transfer(w, s.main_wallet.address, sol)
            except ChainError as e:
                failed += 1
                logger.warning("[CHAT %s] sell all on %s failed: %s", session_id, w.address, e)
        if failed:
            return f"⚠️ Sold & moved to main, {failed} wallet(s) failed"
        return "✅ Sold all & moved to main"

    async def confirm_withdraw(self, session_id) -> str:
        s = self.store.get(str(session_id))
        if not s.withdraw_target:
            return "❌ Withdraw address not set"
        if self.scheduler.active_kind(session_id) is not None:
            return "ℹ️ Stop the active job first"
        bal = await self.chain.get_balance(s.main_wallet.address)
        amount = bal - WITHDRAW_FEE_CUSHION
        if amount <= 0:
            return "ℹ️ Nothing to withdraw"
        sig = await self.chain.transfer(s.main_wallet, s.withdraw_target, amount)
        logger.info("[CHAT %s] withdrew %.6f SOL to %s", session_id, amount / LAMPORTS_PER_SOL, s.withdraw_target)
        return f"✅ Withdrew {amount / LAMPORTS_PER_SOL:.4f} SOL\nhttps://solscan.io/tx/{sig}"


# =========================
# TELEGRAM LOOP
# =========================
CONFIG_COMMANDS = {
    "/setMaxWallets": ("max_wallets", "maxWallets"),
    "/setBuyCycles": ("buy_cycles", "buyCycles"),
    "/setDelayMs": ("delay_ms", "delayMs"),
}

MINT_PROMPT = "🚀 Welcome! Please send the SPL token mint to boost."
RATE_PROMPT = "⏱️ How fast should I boost? Choose buys per minute:"


async def send_panel(app: App, tg: TelegramAPI, chat_id: int) -> None:
    s = app.store.get(str(chat_id))
    text = await app.summary(chat_id)
    panel = await tg.upsert_panel(chat_id, s.panel, text, reply_markup=panel_kb())
    if panel != s.panel:
        s.panel = panel
        await app.store.save()


async def handle_message(app: App, tg: TelegramAPI, msg: Dict[str, Any]) -> None:
    chat_id = (msg.get("chat") or {}).get("id")
    if chat_id is None:
        return
    text = (msg.get("text") or "").strip()
    app.remember_user(chat_id, (msg.get("from") or {}).get("username"))

    if text.startswith("/start"):
        await app.start(chat_id)
        await tg.send_message(chat_id, MINT_PROMPT)
        return

    if app.store.get(str(chat_id)) is None:
        return

    cmd, _, arg = text.partition(" ")
    if cmd in CONFIG_COMMANDS:
        key, label = CONFIG_COMMANDS[cmd]
        try:
            value = int(arg.strip())
        except ValueError:
            await tg.send_message(chat_id, f"Usage: {cmd} <number>")
            return
        if await app.set_config(chat_id, key, value):
            await tg.send_message(chat_id, f"✅ {label}={value}")
        else:
            await tg.send_message(chat_id, f"❌ {label} out of range")
        return

    t = await app.conversation.on_text(str(chat_id), text)
    if t.outcome == Outcome.MINT_ACCEPTED:
        await tg.send_message(chat_id, render_token_header(t.token))
        await tg.send_message(chat_id, RATE_PROMPT, reply_markup=rate_kb())
    elif t.outcome == Outcome.MINT_DEGRADED:
        await tg.send_message(
            chat_id,
            "⚠️ Unable to fetch token data right now. You can still use this mint, but data may be incomplete.",
        )
        await tg.send_message(chat_id, RATE_PROMPT, reply_markup=rate_kb())
    elif t.outcome == Outcome.MINT_REJECTED:
        await tg.send_message(
            chat_id,
            "❌ I couldn't verify that mint on Coingecko or on-chain. Please double-check the token address and send it again.",
        )
    elif t.outcome == Outcome.WITHDRAW_SET:
        await tg.send_message(chat_id, f"✅ Withdraw address set: {t.value}")
        await send_panel(app, tg, chat_id)


async def handle_callback(app: App, tg: TelegramAPI, cq: Dict[str, Any]) -> None:
    cq_id = cq.get("id")
    data = (cq.get("data") or "").strip()
    msg = cq.get("message") or {}
    chat_id = (msg.get("chat") or {}).get("id")
    app.remember_user(chat_id, (cq.get("from") or {}).get("username"))

    if chat_id is None or app.store.get(str(chat_id)) is None:
        if cq_id:
            await tg.answer_callback_query(cq_id)
        return

    if data.startswith("rate_"):
        try:
            n = int(data.split("_", 1)[1])
        except ValueError:
            n = 0
        t = await app.conversation.on_rate(str(chat_id), n)
        if cq_id:
            await tg.answer_callback_query(cq_id, f"Set to {n} buys/min" if t.outcome == Outcome.RATE_SET else None)
        if t.outcome == Outcome.RATE_SET:
            await send_panel(app, tg, chat_id)
            if app.scheduler.active_kind(chat_id) is not None:
                await tg.send_message(
                    chat_id,
                    f"⏳ Waiting for deposit of at least {app.settings.min_deposit_lamports / LAMPORTS_PER_SOL} SOL…",
                )
        return

    if cq_id:
        await tg.answer_callback_query(cq_id)

    if data == "create":
        await app.reset(chat_id)
        await tg.send_message(chat_id, MINT_PROMPT)
    elif data == "add":
        if not await app.add_wallet(chat_id):
            await tg.send_message(chat_id, "❌ Max wallets reached")
    elif data == "setMint":
        await app.conversation.expect(str(chat_id), AwaitingState.MINT)
        await tg.send_message(chat_id, "📝 Send new mint:")
        return
    elif data == "cfg":
        await tg.send_message(chat_id, "⚙️ /setMaxWallets /setBuyCycles /setDelayMs")
        return
    elif data == "run":
        await tg.send_message(chat_id, await app.run(chat_id))
        return
    elif data == "stop":
        await tg.send_message(chat_id, await app.stop(chat_id))
        return
    elif data == "status":
        await tg.send_message(chat_id, await app.stats_text(chat_id))
        return
    elif data == "showMain":
        await tg.send_message(chat_id, await app.show_main(chat_id))
        return
    elif data == "setWithdraw":
        await app.conversation.expect(str(chat_id), AwaitingState.WITHDRAW_ADDRESS)
        await tg.send_message(chat_id, "📝 Send withdraw addr:")
        return
    elif data == "sellAll":
        await tg.send_message(chat_id, await app.sell_all(chat_id))
        return
    elif data == "confirmWithdraw":
        await tg.send_message(chat_id, await app.confirm_withdraw(chat_id))
        return
    else:
        return

    # redraw
    await send_panel(app, tg, chat_id)


async def telegram_loop(app: App, tg: TelegramAPI) -> None:
    await tg.delete_webhook()
    offset = 0

    while True:
        try:
            updates = await tg.get_updates(offset=offset, timeout=app.settings.tg_longpoll_timeout)
        except (TelegramError, aiohttp.ClientError) as e:
            logger.warning("[TG] getUpdates failed: %s, retrying in %ss", e, UPDATES_RETRY_SECONDS)
            await asyncio.sleep(UPDATES_RETRY_SECONDS)
            continue
        for u in updates:
            offset = max(offset, u.get("update_id", 0) + 1)
            try:
                if "message" in u:
                    await handle_message(app, tg, u["message"])
                elif "callback_query" in u:
                    await handle_callback(app, tg, u["callback_query"])
            except Exception as e:
                logger.exception("[TG] handler error: %s %r", type(e).__name__, e)
