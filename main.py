# main.py
# Telegram volume bot: per-chat sessions with a main wallet and disposable
# secondary wallets, a deposit watcher and a buy/sell cycle runner.
# - sessions (including wallet secret keys) are kept AES-GCM encrypted on disk
# - user picks a token mint and a buy rate, deposits SOL to the main wallet
# - once the deposit lands, funds are split across secondaries and traded

import asyncio
import logging
import os

import aiohttp

from volumebot.app import App, telegram_loop
from volumebot.chain import SolanaChainClient
from volumebot.config import load_settings
from volumebot.errors import StoreDecryptError
from volumebot.oracle import PriceOracle
from volumebot.store import SessionStore
from volumebot.telegram_api import TelegramAPI, TelegramSink
from volumebot.ui import panel_kb

logger = logging.getLogger("volumebot")


def setup_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =========================
# MAIN
# =========================
async def main():
    settings = load_settings()
    store = SessionStore(settings.db_file, settings.db_key)
    try:
        store.load()
    except StoreDecryptError as e:
        raise SystemExit(f"Session store {settings.db_file} is unreadable: {e}") from e

    async with aiohttp.ClientSession() as session:
        chain = SolanaChainClient(
            settings.rpc_url,
            session,
            settings.swap_api_url,
            slippage=settings.swap_slippage,
            priority_fee_sol=settings.swap_priority_fee_sol,
            timeout_seconds=settings.http_timeout_seconds,
        )
        oracle = PriceOracle(session, chain, settings.coingecko_url, settings.http_timeout_seconds)
        tg = TelegramAPI(
            settings.telegram_token,
            session,
            timeout_seconds=settings.http_timeout_seconds,
            longpoll_grace=settings.tg_longpoll_grace,
        )
        sink = TelegramSink(tg, store, panel_markup=panel_kb())
        app = App(settings, store, chain, oracle, sink)

        # runners are not resumed after a restart; pending deposit watchers are
        rearm = []
        for sid in store.ids():
            s = store.get(sid)
            if s.deposit_watcher_active and s.token_mint:
                rearm.append(sid)
            s.deposit_watcher_active = False
            s.runner_active = False
        await store.save()
        for sid in rearm:
            await app.scheduler.arm_deposit_watcher(sid)

        logger.info("[MAIN] %d sessions, polling Telegram", len(store.ids()))
        try:
            await telegram_loop(app, tg)
        finally:
            await app.scheduler.shutdown()
            await store.save()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
