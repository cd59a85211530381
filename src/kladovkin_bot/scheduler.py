import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

AlertCallback = Callable[[str], Awaitable[Any]]


class TaskState(str, Enum):
    """Lifecycle of a periodic task"""
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class PeriodicTask:
    """A named coroutine run every ``interval`` seconds"""
    name: str
    func: Callable[[], Awaitable[Any]]
    interval: float
    state: TaskState = TaskState.IDLE
    runs: int = 0
    fail_count: int = 0  # consecutive failures
    alert_sent: bool = False
    last_error: Optional[str] = None


class TaskScheduler:
    """Runs independent periodic tasks on an AsyncIOScheduler.

    - Every task has its own interval job; the first run happens one full
      interval after start.
    - A failing cycle is logged and counted, the task keeps ticking and other
      tasks are not affected.
    - After ``failure_alert_threshold`` consecutive failures the admin gets
      one alert, and a recovery notice once the task succeeds again.
    """

    def __init__(
        self,
        alert: Optional[AlertCallback] = None,
        failure_alert_threshold: int = 5,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.alert = alert
        self.failure_alert_threshold = failure_alert_threshold
        self.scheduler = scheduler or AsyncIOScheduler()
        self.tasks: Dict[str, PeriodicTask] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._stopping = False

    def add_task(self, name: str, func: Callable[[], Awaitable[Any]], interval: float) -> PeriodicTask:
        """Register a periodic task"""
        if name in self.tasks:
            raise ValueError(f"task {name!r} already registered")
        task = PeriodicTask(name=name, func=func, interval=interval)
        self.tasks[name] = task
        # misfire_grace_time: None means a late run is never dropped
        # coalesce: several missed runs collapse into one
        self.scheduler.add_job(
            self._run_task,
            "interval",
            seconds=interval,
            args=[name],
            id=name,
            misfire_grace_time=None,
            coalesce=True,
            max_instances=1
        )
        return task

    def state(self, name: str) -> TaskState:
        return self.tasks[name].state

    @property
    def stopping(self) -> bool:
        return self._stopping

    def start(self) -> None:
        """Start ticking (must be called from a running event loop)"""
        self.scheduler.start()
        for task in self.tasks.values():
            logger.info(f"⏰ Task {task.name} scheduled every {task.interval:g}s")

    async def run_now(self, name: str) -> bool:
        """Run one cycle of a task immediately, returns True on success"""
        return await self._run_task(name)

    async def _run_task(self, name: str) -> bool:
        task = self.tasks[name]
        if self._stopping:
            return False
        if task.state == TaskState.RUNNING:
            logger.warning(f"[{name}] previous cycle still running, skipping")
            return False

        current = asyncio.current_task()
        self._in_flight.add(current)
        task.state = TaskState.RUNNING
        task.runs += 1
        try:
            await task.func()
        except asyncio.CancelledError:
            logger.warning(f"[{name}] 🛑 cycle cancelled")
            raise
        except Exception as e:
            task.state = TaskState.FAILED
            task.fail_count += 1
            task.last_error = str(e)
            logger.error(f"[{name}] ❌ cycle failed ({task.fail_count} in a row): {e}")
            await self._alert_failure(task)
            return False
        else:
            if task.fail_count > 0:
                logger.info(f"[{name}] ✅ recovered after {task.fail_count} failures")
                if task.alert_sent:
                    await self._send_alert(f"✅ Задача {name} снова работает, предыдущее предупреждение можно игнорировать")
            task.fail_count = 0
            task.alert_sent = False
            task.last_error = None
            return True
        finally:
            self._in_flight.discard(current)
            task.state = TaskState.STOPPED if self._stopping else TaskState.IDLE

    async def _alert_failure(self, task: PeriodicTask) -> None:
        if task.fail_count < self.failure_alert_threshold or task.alert_sent:
            return
        task.alert_sent = True
        await self._send_alert(
            f"⚠️ Задача {task.name} завершилась с ошибкой {task.fail_count} раз подряд\n\n"
            f"Ошибка: {task.last_error}"
        )

    async def _send_alert(self, message: str) -> None:
        if not self.alert:
            return
        try:
            await self.alert(message)
        except Exception as e:
            logger.error(f"Failed to send admin alert: {e}")

    async def shutdown(self, grace: float = 30.0) -> None:
        """Stop ticking and wait for running cycles.

        No new cycle starts once this is called. Running cycles get ``grace``
        seconds to finish and are cancelled after that. Returns only when
        every cycle has exited.
        """
        self._stopping = True
        if self.scheduler.running:
            self.scheduler.pause()

        pending = [t for t in self._in_flight if not t.done()]
        if pending:
            logger.info(f"⏳ Waiting for {len(pending)} running cycles...")
            _, still_running = await asyncio.wait(pending, timeout=grace)
            for t in still_running:
                t.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for task in self.tasks.values():
            task.state = TaskState.STOPPED
        logger.info("🛑 Scheduler stopped")
