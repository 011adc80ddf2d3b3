import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol

from .chain import ChainClient
from .config import LAMPORTS_PER_SOL
from .errors import ChainError
from .runner import CancelToken
from .store import SessionStore

logger = logging.getLogger(__name__)

WATCHER = "watcher"
RUNNER = "runner"


class PresentationSink(Protocol):
    async def push_summary(self, session_id: str, text: str) -> None: ...

    async def prompt_user(self, session_id: str, text: str) -> None: ...


@dataclass
class JobHandle:
    kind: str
    task: asyncio.Task
    token: CancelToken


RunJob = Callable[[str, CancelToken], Awaitable[None]]
RenderSummary = Callable[[str], Awaitable[str]]


class JobScheduler:
    """
    Per session job table: at most one deposit watcher or one trade runner,
    plus a status refresher that lives exactly as long as the runner.
    """

    def __init__(
        self,
        store: SessionStore,
        chain: ChainClient,
        sink: PresentationSink,
        run_job: RunJob,
        render_summary: RenderSummary,
        min_deposit_lamports: int,
        poll_seconds: float = 5.0,
        refresh_seconds: float = 30.0,
    ):
        self.store = store
        self.chain = chain
        self.sink = sink
        self.run_job = run_job
        self.render_summary = render_summary
        self.min_deposit_lamports = min_deposit_lamports
        self.poll_seconds = poll_seconds
        self.refresh_seconds = refresh_seconds

        self._jobs: Dict[str, JobHandle] = {}
        self._refreshers: Dict[str, asyncio.Task] = {}

    # -------------------------
    # queries
    # -------------------------
    def active_kind(self, session_id) -> Optional[str]:
        handle = self._jobs.get(str(session_id))
        return handle.kind if handle else None

    def has_refresher(self, session_id) -> bool:
        return str(session_id) in self._refreshers

    def _release(self, sid: str) -> None:
        handle = self._jobs.get(sid)
        if handle is not None and handle.task is asyncio.current_task():
            del self._jobs[sid]

    async def _notify(self, sid: str, text: str) -> None:
        try:
            await self.sink.prompt_user(sid, text)
        except Exception as e:
            logger.warning("[JOB %s] notify failed: %s %r", sid, type(e).__name__, e)

    # -------------------------
    # deposit watcher
    # -------------------------
    async def arm_deposit_watcher(self, session_id, bypass: bool = False) -> None:
        sid = str(session_id)
        await self.cancel_all(sid)
        s = self.store.get(sid)
        s.deposit_watcher_active = True
        s.runner_active = False
        token = CancelToken()
        task = asyncio.create_task(self._watch(sid, bypass), name=f"{WATCHER}:{sid}")
        self._jobs[sid] = JobHandle(WATCHER, task, token)
        await self.store.save()
        logger.info("[JOB %s] deposit watcher armed (bypass=%s)", sid, bypass)

    async def _watch(self, sid: str, bypass: bool) -> None:
        while True:
            s = self.store.get(sid)
            if s is None:
                self._release(sid)
                return
            if bypass:
                break
            try:
                bal = await self.chain.get_balance(s.main_wallet.address)
            except ChainError as e:
                logger.warning("[JOB %s] deposit poll failed: %s", sid, e)
                bal = None
            if bal is not None and bal >= self.min_deposit_lamports:
                logger.info("[JOB %s] deposit of %.4f SOL detected", sid, bal / LAMPORTS_PER_SOL)
                break
            await asyncio.sleep(self.poll_seconds)

        # hand over to the runner without yielding in between
        self._release(sid)
        s.deposit_watcher_active = False
        self._launch_runner(sid)
        await self.store.save()
        await self._notify(sid, "✅ Deposit detected! Starting boost now.")

    # -------------------------
    # trade runner
    # -------------------------
    async def start_runner(self, session_id) -> None:
        sid = str(session_id)
        await self.cancel_all(sid)
        self._launch_runner(sid)
        await self.store.save()

    def _launch_runner(self, sid: str) -> None:
        s = self.store.get(sid)
        s.deposit_watcher_active = False
        s.runner_active = True
        token = CancelToken()
        task = asyncio.create_task(self._run(sid, token), name=f"{RUNNER}:{sid}")
        self._jobs[sid] = JobHandle(RUNNER, task, token)

    async def _run(self, sid: str, token: CancelToken) -> None:
        self._start_refresher(sid)
        try:
            await self.run_job(sid, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[JOB %s] runner failed: %s", sid, e)
            await self._notify(sid, f"❌ Volume run stopped: {type(e).__name__}: {e}")
        finally:
            self._stop_refresher(sid)
            self._release(sid)
            s = self.store.get(sid)
            if s is not None and self.active_kind(sid) is None:
                s.runner_active = False
            await self.store.save()
            logger.info("[JOB %s] runner finished (stopped=%s)", sid, token.cancelled)

    # -------------------------
    # status refresher
    # -------------------------
    def _start_refresher(self, sid: str) -> None:
        self._stop_refresher(sid)
        self._refreshers[sid] = asyncio.create_task(self._refresh_loop(sid), name=f"refresher:{sid}")

    def _stop_refresher(self, sid: str) -> None:
        task = self._refreshers.pop(sid, None)
        if task is not None:
            task.cancel()

    async def _refresh_loop(self, sid: str) -> None:
        while True:
            await asyncio.sleep(self.refresh_seconds)
            try:
                text = await self.render_summary(sid)
                await self.sink.push_summary(sid, text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[JOB %s] status refresh failed: %s %r", sid, type(e).__name__, e)

    # -------------------------
    # cancellation
    # -------------------------
    async def stop(self, session_id) -> Optional[str]:
        """Stop whatever job the session has. Runner stops at its next leg boundary."""
        sid = str(session_id)
        handle = self._jobs.get(sid)
        if handle is None:
            return None
        if handle.kind == RUNNER:
            handle.token.cancel()
            self._stop_refresher(sid)
            logger.info("[JOB %s] stop requested", sid)
            return RUNNER
        await self.cancel_all(sid)
        await self.store.save()
        return WATCHER

    async def cancel_all(self, session_id) -> None:
        """Tear down every job of the session and wait until none is left running."""
        sid = str(session_id)
        self._stop_refresher(sid)
        handle = self._jobs.pop(sid, None)
        if handle is not None and handle.task is not asyncio.current_task():
            handle.token.cancel()
            if handle.kind == WATCHER:
                handle.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handle.task
        s = self.store.get(sid)
        if s is not None:
            s.deposit_watcher_active = False
            s.runner_active = False

    async def shutdown(self) -> None:
        tasks = []
        for sid in list(self._refreshers):
            self._stop_refresher(sid)
        for sid, handle in list(self._jobs.items()):
            handle.token.cancel()
            handle.task.cancel()
            tasks.append(handle.task)
        self._jobs.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
