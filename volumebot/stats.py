from typing import Optional

from .config import now_ms
from .models import RunStats, Session


class StatsTracker:
    def __init__(self, session: Session):
        self.session = session

    @property
    def stats(self) -> Optional[RunStats]:
        return self.session.stats

    def begin(self, initial_balance: int, start_time: Optional[int] = None) -> RunStats:
        self.session.stats = RunStats(
            initial_balance=initial_balance,
            start_time=start_time if start_time is not None else now_ms(),
        )
        return self.session.stats

    def record_action(self) -> int:
        if self.session.stats is None:
            raise RuntimeError("stats not started")
        self.session.stats.action_count += 1
        return self.session.stats.action_count

    def finish(self, final_balance: int) -> None:
        if self.session.stats is not None:
            self.session.stats.final_balance = final_balance


def elapsed_seconds(stats: RunStats, now: Optional[int] = None) -> int:
    return max(0, ((now if now is not None else now_ms()) - stats.start_time) // 1000)


def profit(stats: RunStats) -> Optional[int]:
    # initial minus final, same sign convention as the panel
    if stats.final_balance is None:
        return None
    return stats.initial_balance - stats.final_balance
