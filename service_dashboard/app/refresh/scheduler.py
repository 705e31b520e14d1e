"""
Cron-driven refresh of database materialized views.

Each tick runs the configured actions one after another. A failing action is
logged and skipped; it never stops its siblings, the tick, or the service.
Failures caused by a database object that has not been created yet (a
migration not applied in this environment) are expected and logged quietly.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from croniter import croniter

from shared.errors import ConfigurationError
from shared.logging import get_logger, refresh_action_context

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


# PostgREST "function not found", Postgres undefined_function / undefined_table
MISSING_OBJECT_CODES = frozenset({"PGRST202", "42883", "42P01"})

SUCCEEDED = "succeeded"
NOT_PROVISIONED = "not_provisioned"
FAILED = "failed"
TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RefreshAction:
    name: str
    run: Callable[[], Awaitable[Any]]


@dataclass
class RefreshOutcome:
    action: str
    status: str
    duration_ms: float
    error: Optional[str] = None


def is_missing_object_error(exc: BaseException) -> bool:
    """True when exc says the function/view being refreshed does not exist."""
    if getattr(exc, "error_code", None) in MISSING_OBJECT_CODES:
        return True
    return "does not exist" in str(exc).lower()


class RefreshScheduler:
    """Runs refresh actions on a cron schedule and on demand."""

    def __init__(
        self,
        cron_expr: str,
        actions: Iterable[RefreshAction],
        *,
        on_demand_actions: Iterable[RefreshAction] = (),
        background_timeout_seconds: float = 10.0,
        metrics: Optional["MetricsCollector"] = None,
        logger: Any = None,
    ):
        if not croniter.is_valid(cron_expr):
            raise ConfigurationError(
                f"Invalid refresh cron expression: {cron_expr!r}",
                {"cron": cron_expr}
            )

        self.cron_expr = cron_expr
        self.actions: List[RefreshAction] = list(actions)
        self.background_timeout_seconds = background_timeout_seconds
        self.metrics = metrics
        self.logger = logger or get_logger("dashboard.refresh_scheduler")

        self._actions_by_name: Dict[str, RefreshAction] = {}
        for action in [*self.actions, *on_demand_actions]:
            self._actions_by_name.setdefault(action.name, action)

        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._background_tasks: Dict[str, asyncio.Task] = {}

    def next_fire_time(self, after: Optional[datetime] = None) -> datetime:
        base = after or datetime.now(timezone.utc)
        return croniter(self.cron_expr, base).get_next(datetime)

    async def start(self):
        """Start the cron loop."""
        if self.running:
            return

        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        self.logger.info(
            "Refresh scheduler started",
            cron=self.cron_expr,
            actions=[action.name for action in self.actions],
        )

    async def stop(self):
        """Stop the cron loop and any in-flight background refreshes."""
        self.running = False

        tasks = list(self._background_tasks.values())
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._task = None
        self._background_tasks.clear()
        self.logger.info("Refresh scheduler stopped")

    async def _run_loop(self):
        while self.running:
            try:
                now = datetime.now(timezone.utc)
                delay = (self.next_fire_time(now) - now).total_seconds()
                await asyncio.sleep(max(delay, 0))
                await self.run_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Refresh loop error", error=str(e))

    async def run_tick(self) -> List[RefreshOutcome]:
        """Run every scheduled action once, in order."""
        started = time.perf_counter()
        outcomes = [await self._run_action(action) for action in self.actions]

        self.logger.info(
            "Scheduled view refresh completed",
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            succeeded=sum(1 for outcome in outcomes if outcome.status == SUCCEEDED),
            failed=sum(1 for outcome in outcomes if outcome.status in (FAILED, TIMED_OUT)),
        )
        return outcomes

    def trigger_background_refresh(self, name: str) -> Optional[asyncio.Task]:
        """Start a detached refresh of one action; the caller never waits on it."""
        action = self._actions_by_name.get(name)
        if action is None:
            self.logger.warning("Unknown refresh action requested", action=name)
            return None

        in_flight = self._background_tasks.get(name)
        if in_flight and not in_flight.done():
            self.logger.debug("Background refresh already running", action=name)
            return in_flight

        task = asyncio.create_task(
            self._run_action(action, timeout=self.background_timeout_seconds)
        )
        self._background_tasks[name] = task
        task.add_done_callback(lambda finished: self._background_done(name, finished))
        self.logger.info("Background refresh triggered", action=name)
        return task

    def _background_done(self, name: str, task: asyncio.Task):
        if self._background_tasks.get(name) is task:
            del self._background_tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Background refresh crashed", action=name, error=str(exc))

    async def _run_action(self, action: RefreshAction, timeout: Optional[float] = None) -> RefreshOutcome:
        with refresh_action_context(action.name):
            return await self._execute(action, timeout)

    async def _execute(self, action: RefreshAction, timeout: Optional[float]) -> RefreshOutcome:
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        try:
            if timeout is None:
                await action.run()
            else:
                await asyncio.wait_for(action.run(), timeout)
        except asyncio.TimeoutError:
            outcome = RefreshOutcome(action.name, TIMED_OUT, elapsed_ms(), f"timed out after {timeout}s")
            self.logger.warning("View refresh timed out", action=action.name, timeout_seconds=timeout)
        except Exception as exc:
            if is_missing_object_error(exc):
                outcome = RefreshOutcome(action.name, NOT_PROVISIONED, elapsed_ms(), str(exc))
                self.logger.info(
                    "View refresh skipped, database object not provisioned",
                    action=action.name,
                    error=str(exc),
                )
            else:
                outcome = RefreshOutcome(action.name, FAILED, elapsed_ms(), str(exc))
                self.logger.warning(
                    "View refresh failed",
                    action=action.name,
                    duration_ms=outcome.duration_ms,
                    error=str(exc),
                )
        else:
            outcome = RefreshOutcome(action.name, SUCCEEDED, elapsed_ms())
            self.logger.info("View refresh succeeded", action=action.name, duration_ms=outcome.duration_ms)

        if self.metrics:
            self.metrics.increment_counter("view_refresh_total", action=action.name, outcome=outcome.status)
            self.metrics.observe_histogram(
                "view_refresh_duration_seconds",
                outcome.duration_ms / 1000,
                action=action.name,
            )
        return outcome


async def schedule_refresh(cron_expr: str, actions: Iterable[RefreshAction], **kwargs) -> RefreshScheduler:
    """Create a scheduler for actions and start it."""
    scheduler = RefreshScheduler(cron_expr, actions, **kwargs)
    await scheduler.start()
    return scheduler
