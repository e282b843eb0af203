# schedule.py
# Cron-driven awakening timer.
#
# The schedule expression lives in /self/schedule.txt so both the operator
# and the agent (via set-schedule) can change it. The scheduler re-reads it
# on every reschedule. One pending timer at a time; rescheduling cancels it.

import logging
import re
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from croniter import croniter

from moral_agent.storage import AgentStorage

logger = logging.getLogger(__name__)

SCHEDULE_PATH = "/self/schedule.txt"

_INTERVAL_PATTERN = re.compile(r"^\*/(\d+)\s")


def normalize_expression(expression: str) -> str:
    return " ".join(expression.split())


def is_valid(expression: str) -> bool:
    expression = normalize_expression(expression)
    return bool(expression) and croniter.is_valid(expression)


def next_fire(expression: str, now: datetime | None = None) -> datetime:
    base = now or datetime.now(timezone.utc)
    return croniter(normalize_expression(expression), base).get_next(datetime)


def interval_minutes(expression: str, default: int) -> int:
    """Minutes between awakenings for `*/N` expressions, else `default`."""
    match = _INTERVAL_PATTERN.match(normalize_expression(expression) + " ")
    return int(match.group(1)) if match else default


class AwakeningScheduler:
    """
    Fires `callback` at the next time matching the current expression.

    Example:
        scheduler = AwakeningScheduler(storage, default_interval=30, callback=supervisor.trigger)
        scheduler.reschedule()
    """

    def __init__(
        self,
        storage: AgentStorage,
        default_interval: int,
        callback: Callable[[], object],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._storage = storage
        self._default_interval = default_interval
        self._callback = callback
        self._clock = clock
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self.expression = self.default_expression
        self.next_run: datetime | None = None

    @property
    def default_expression(self) -> str:
        return f"*/{self._default_interval} * * * *"

    def current_expression(self) -> str:
        """Stored expression if valid, else the default."""
        stored = normalize_expression(self._storage.read(SCHEDULE_PATH) or "")
        if not stored:
            return self.default_expression
        if not is_valid(stored):
            logger.error("Invalid cron expression, using default", extra={"data": {"cron": stored}})
            return self.default_expression
        return stored

    @property
    def interval_minutes(self) -> int:
        return interval_minutes(self.expression, self._default_interval)

    def reschedule(self) -> datetime:
        """Cancel the pending timer and arm one for the next matching time."""
        with self._lock:
            self._cancel_locked()
            self.expression = self.current_expression()
            now = self._clock()
            self.next_run = next_fire(self.expression, now)
            delay = max(0.0, (self.next_run - now).total_seconds())

            timer = threading.Timer(delay, self._fire)
            timer.daemon = True
            timer.start()
            self._timer = timer

        logger.info(
            "Awakenings scheduled",
            extra={
                "data": {
                    "cron": self.expression,
                    "interval_minutes": self.interval_minutes,
                    "next_run": self.next_run.isoformat(),
                }
            },
        )
        return self.next_run

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled awakening failed")
        finally:
            # The callback normally re-arms; only step in if it didn't.
            if threading.current_thread() is self._timer:
                self.reschedule()
