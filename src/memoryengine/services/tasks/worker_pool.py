"""
Worker Pool Task Service implementation.

Priority queue drained by a fixed pool of asyncio workers. Tasks are bounded
by a timeout, retried on failure and counted per type.
"""
import asyncio
import heapq
import itertools
import time
from collections import defaultdict
from logging import Logger
from typing import Optional

from cachetools import LRUCache
from scitrera_app_framework import get_logger, Variables, ext_parse_bool

from ...config import (
    MEMORYENGINE_TASKS_ENABLED, DEFAULT_MEMORYENGINE_TASKS_ENABLED,
    MEMORYENGINE_TASKS_WORKERS, DEFAULT_MEMORYENGINE_TASKS_WORKERS,
    MEMORYENGINE_TASKS_QUEUE_CAPACITY, DEFAULT_MEMORYENGINE_TASKS_QUEUE_CAPACITY,
    MEMORYENGINE_TASKS_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_TASKS_TIMEOUT_SECONDS,
    MEMORYENGINE_TASKS_MAX_RETRIES, DEFAULT_MEMORYENGINE_TASKS_MAX_RETRIES,
    MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS,
    MEMORYENGINE_TASKS_HIGH_PRIORITY, DEFAULT_MEMORYENGINE_TASKS_HIGH_PRIORITY,
    MEMORYENGINE_TASKS_FINISHED_RETENTION, DEFAULT_MEMORYENGINE_TASKS_FINISHED_RETENTION,
)
from ...utils import generate_id, utc_now
from .base import (
    BackgroundTask,
    QueueFullError,
    TaskHandler,
    TaskPriority,
    TaskService,
    TaskServicePluginBase,
    TaskServiceShutdownError,
    TaskStatus,
)


class _TypeStats:
    __slots__ = ("processed", "failed", "retried", "total_seconds")

    def __init__(self):
        self.processed = 0
        self.failed = 0
        self.retried = 0
        self.total_seconds = 0.0

    def as_dict(self) -> dict:
        runs = self.processed + self.failed
        return {
            "processed": self.processed,
            "failed": self.failed,
            "retried": self.retried,
            "average_processing_ms": (self.total_seconds / runs * 1000.0) if runs else 0.0,
        }


class WorkerPoolTaskService(TaskService):
    """
    In-process priority task queue with a fixed worker pool.

    Features:
    - min-heap ordered by (priority, enqueue sequence); lower priority value runs first
    - bounded capacity; tasks at or above the high-priority level are always admitted
    - per-task timeout and retries, then ``failed``
    - finished tasks kept in a bounded LRU for inspection, then forgotten
    - no persistence (tasks lost on restart)

    With background tasks disabled no workers are started; queued tasks stay
    pending until :meth:`run_pending` executes them inline.
    """

    def __init__(
            self,
            v: Variables = None,
            tasks_enabled: bool = DEFAULT_MEMORYENGINE_TASKS_ENABLED,
            workers: int = DEFAULT_MEMORYENGINE_TASKS_WORKERS,
            queue_capacity: int = DEFAULT_MEMORYENGINE_TASKS_QUEUE_CAPACITY,
            task_timeout_seconds: float = DEFAULT_MEMORYENGINE_TASKS_TIMEOUT_SECONDS,
            max_retries: int = DEFAULT_MEMORYENGINE_TASKS_MAX_RETRIES,
            shutdown_timeout_seconds: float = DEFAULT_MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS,
            high_priority: int = DEFAULT_MEMORYENGINE_TASKS_HIGH_PRIORITY,
            finished_retention: int = DEFAULT_MEMORYENGINE_TASKS_FINISHED_RETENTION,
    ):
        self._tasks_enabled = tasks_enabled
        self.max_workers = max(1, workers)
        self.queue_capacity = queue_capacity
        self.task_timeout_seconds = task_timeout_seconds
        self.max_retries = max_retries
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.high_priority = high_priority

        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        # pending and running only; finished tasks move to _finished
        self._tasks: dict[str, BackgroundTask] = {}
        self._finished: LRUCache = LRUCache(maxsize=max(1, finished_retention))
        self._handlers: dict[str, TaskHandler] = {}
        self._workers: list[asyncio.Task] = []
        self._timers: dict[str, asyncio.Task] = {}
        self._recurring: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Condition()
        self._closed = False
        self._active = 0

        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._rejected = 0
        self._total_seconds = 0.0
        self._by_type: defaultdict[str, _TypeStats] = defaultdict(_TypeStats)
        self._started_at = time.monotonic()

        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info(
            "Initialized WorkerPoolTaskService (enabled=%s, workers=%d, capacity=%d, timeout=%ss, retries=%d)",
            tasks_enabled, self.max_workers, queue_capacity, task_timeout_seconds, max_retries,
        )

    # ========== Lifecycle ==========

    async def start(self) -> None:
        if not self._tasks_enabled:
            self.logger.info("Background tasks disabled; queued tasks run only on demand")
            return
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"memoryengine-worker-{i}")
            for i in range(self.max_workers)
        ]
        self.logger.info("Started %d task workers", len(self._workers))

    async def shutdown(self, timeout_seconds: Optional[float] = None) -> None:
        """Stop accepting tasks, drain within the timeout, then cancel the rest."""
        if self._closed:
            return
        self._closed = True
        timeout = self.shutdown_timeout_seconds if timeout_seconds is None else timeout_seconds

        for timer in list(self._timers.values()) + list(self._recurring.values()):
            timer.cancel()
        self._recurring.clear()

        if self._workers:
            deadline = time.monotonic() + timeout
            while (self.queue_size or self._active) and time.monotonic() < deadline:
                await asyncio.sleep(0.01)

            async with self._wakeup:
                self._wakeup.notify_all()
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []

        cancelled = 0
        for task in list(self._tasks.values()):
            self._finish(task, TaskStatus.CANCELLED)
            cancelled += 1
        self._heap.clear()
        self.logger.info("Task service shut down (%d processed, %d failed, %d cancelled)",
                         self._processed, self._failed, cancelled)

    # ========== Submission ==========

    async def enqueue_task(
            self,
            task_type: str,
            payload: dict,
            priority: int = TaskPriority.NORMAL,
    ) -> str:
        task = self._new_task(task_type, payload, priority)
        await self._push(task)
        return task.id

    async def schedule_task(
            self,
            task_type: str,
            payload: dict,
            delay_seconds: int = 0,
            priority: int = TaskPriority.NORMAL,
    ) -> str:
        if delay_seconds <= 0:
            return await self.enqueue_task(task_type, payload, priority)

        task = self._new_task(task_type, payload, priority)

        async def push_after_delay():
            try:
                await asyncio.sleep(delay_seconds)
                await self._push(task)
            except (QueueFullError, TaskServiceShutdownError) as e:
                task.error = str(e)
                self._finish(task, TaskStatus.FAILED)
                self.logger.warning("Delayed task %s not queued: %s", task.id, e)
            finally:
                self._timers.pop(task.id, None)

        self._timers[task.id] = asyncio.create_task(push_after_delay())
        return task.id

    async def schedule_recurring(
            self,
            task_type: str,
            interval_seconds: int,
            payload: dict,
            priority: int = TaskPriority.LOW,
    ) -> Optional[str]:
        if not self._tasks_enabled:
            self.logger.debug("Tasks are disabled, skipping schedule_recurring for type: %s", task_type)
            return None
        if self._closed:
            raise TaskServiceShutdownError("Task service is shutting down")
        schedule_id = generate_id("sched", 12)

        async def run_recurring():
            while not self._closed:
                try:
                    await self.enqueue_task(task_type, dict(payload), priority)
                except QueueFullError as e:
                    self.logger.warning("Recurring %s task skipped this cycle: %s", task_type, e)
                except TaskServiceShutdownError:
                    return
                await asyncio.sleep(interval_seconds)

        self._recurring[schedule_id] = asyncio.create_task(run_recurring())
        self.logger.info(
            "Scheduled recurring task %s: type=%s, interval=%ss",
            schedule_id, task_type, interval_seconds
        )
        return schedule_id

    def _new_task(self, task_type: str, payload: dict, priority: int) -> BackgroundTask:
        if self._closed:
            raise TaskServiceShutdownError("Task service is shutting down")
        task = BackgroundTask(
            id=generate_id("task", 12),
            type=str(task_type.value if hasattr(task_type, "value") else task_type),
            priority=int(priority),
            payload=payload,
        )
        self._tasks[task.id] = task
        return task

    async def _push(self, task: BackgroundTask) -> None:
        if self._closed:
            self._tasks.pop(task.id, None)
            raise TaskServiceShutdownError("Task service is shutting down")
        if self.queue_size >= self.queue_capacity and task.priority > self.high_priority:
            self._rejected += 1
            self._tasks.pop(task.id, None)
            self.logger.warning("Queue full (%d), rejecting %s task (priority %d)",
                                self.queue_size, task.type, task.priority)
            raise QueueFullError(task.type, self.queue_capacity)
        async with self._wakeup:
            heapq.heappush(self._heap, (task.priority, next(self._seq), task.id))
            self._wakeup.notify()
        self.logger.debug("Queued task %s (type=%s, priority=%d)", task.id, task.type, task.priority)

    # ========== Execution ==========

    async def _worker(self, index: int) -> None:
        while True:
            async with self._wakeup:
                while not self._heap:
                    if self._closed:
                        return
                    await self._wakeup.wait()
                _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                continue
            await self._execute(task)

    async def run_pending(self) -> int:
        """Execute queued tasks inline in priority order; returns how many ran.

        Retries are re-queued and run in the same call.
        """
        executed = 0
        while self._heap:
            _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                continue
            await self._execute(task)
            executed += 1
        return executed

    async def _execute(self, task: BackgroundTask) -> None:
        stats = self._by_type[task.type]
        task.status = TaskStatus.PROCESSING
        task.attempts += 1
        task.started_at = utc_now()
        self._active += 1
        started = time.perf_counter()
        try:
            handler = self._handlers.get(task.type)
            if handler is None:
                raise LookupError(f"No handler registered for task type: {task.type}")
            task.result = await asyncio.wait_for(handler(task.payload), timeout=self.task_timeout_seconds)
        except asyncio.TimeoutError:
            self._record_failure(task, stats, f"timed out after {self.task_timeout_seconds}s")
        except Exception as e:
            self._record_failure(task, stats, f"{type(e).__name__}: {e}")
        else:
            task.error = None
            self._finish(task, TaskStatus.COMPLETED)
            self._processed += 1
            stats.processed += 1
            self.logger.debug("Task %s (%s) completed", task.id, task.type)
        finally:
            elapsed = time.perf_counter() - started
            self._total_seconds += elapsed
            stats.total_seconds += elapsed
            self._active -= 1

        if task.status == TaskStatus.PENDING:
            heapq.heappush(self._heap, (task.priority, next(self._seq), task.id))
            if self._workers:
                async with self._wakeup:
                    self._wakeup.notify()

    def _finish(self, task: BackgroundTask, status: TaskStatus) -> None:
        task.status = status
        task.completed_at = utc_now()
        self._tasks.pop(task.id, None)
        self._finished[task.id] = task

    def _record_failure(self, task: BackgroundTask, stats: _TypeStats, error: str) -> None:
        task.error = error
        if task.attempts <= self.max_retries and not self._closed:
            task.status = TaskStatus.PENDING
            self._retried += 1
            stats.retried += 1
            self.logger.warning("Task %s (%s) attempt %d failed, retrying: %s",
                                task.id, task.type, task.attempts, error)
            return
        self._finish(task, TaskStatus.FAILED)
        self._failed += 1
        stats.failed += 1
        self.logger.error("Task %s (%s) failed after %d attempt(s): %s",
                          task.id, task.type, task.attempts, error)

    # ========== Inspection ==========

    async def cancel_task(self, task_id: str) -> bool:
        schedule = self._recurring.pop(task_id, None)
        if schedule is not None:
            schedule.cancel()
            self.logger.info("Cancelled recurring schedule %s", task_id)
            return True

        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        # heap entry is skipped lazily when popped
        self._finish(task, TaskStatus.CANCELLED)
        self.logger.info("Cancelled task %s", task_id)
        return True

    async def get_task_status(self, task_id: str) -> TaskStatus:
        if task_id in self._recurring:
            return TaskStatus.PROCESSING
        task = self.get_task(task_id)
        return task.status if task else TaskStatus.NOT_FOUND

    def get_task(self, task_id: str) -> Optional[BackgroundTask]:
        task = self._tasks.get(task_id)
        return task if task is not None else self._finished.get(task_id)

    def list_tasks(
            self,
            status: Optional[TaskStatus] = None,
            task_type: Optional[str] = None,
    ) -> list[BackgroundTask]:
        if task_type is not None and hasattr(task_type, "value"):
            task_type = task_type.value
        return [
            task for task in itertools.chain(self._tasks.values(), self._finished.values())
            if (status is None or task.status == status) and (task_type is None or task.type == task_type)
        ]

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler
        self.logger.info("Registered handler for task type: %s", task_type)

    @property
    def queue_size(self) -> int:
        return sum(1 for _, _, task_id in self._heap
                   if (task := self._tasks.get(task_id)) is not None and task.status == TaskStatus.PENDING)

    def get_stats(self) -> dict:
        runs = self._processed + self._failed + self._retried
        return {
            "queue_size": self.queue_size,
            "processed": self._processed,
            "failed": self._failed,
            "retried": self._retried,
            "rejected": self._rejected,
            "active_workers": self._active,
            "max_workers": self.max_workers,
            "running": bool(self._workers),
            "average_processing_ms": (self._total_seconds / runs * 1000.0) if runs else 0.0,
            "uptime_seconds": time.monotonic() - self._started_at,
            "by_type": {name: stats.as_dict() for name, stats in self._by_type.items()},
        }


class WorkerPoolTaskServicePlugin(TaskServicePluginBase):
    """Plugin that creates and manages the WorkerPoolTaskService instance."""

    # This MUST match what users set in MEMORYENGINE_TASK_PROVIDER
    PROVIDER_NAME = 'worker-pool'

    def initialize(self, v: Variables, logger: Logger) -> TaskService:
        return WorkerPoolTaskService(
            v=v,
            tasks_enabled=v.environ(MEMORYENGINE_TASKS_ENABLED, DEFAULT_MEMORYENGINE_TASKS_ENABLED,
                                    type_fn=ext_parse_bool),
            workers=v.environ(MEMORYENGINE_TASKS_WORKERS, DEFAULT_MEMORYENGINE_TASKS_WORKERS, type_fn=int),
            queue_capacity=v.environ(MEMORYENGINE_TASKS_QUEUE_CAPACITY, DEFAULT_MEMORYENGINE_TASKS_QUEUE_CAPACITY,
                                     type_fn=int),
            task_timeout_seconds=v.environ(MEMORYENGINE_TASKS_TIMEOUT_SECONDS,
                                           DEFAULT_MEMORYENGINE_TASKS_TIMEOUT_SECONDS, type_fn=float),
            max_retries=v.environ(MEMORYENGINE_TASKS_MAX_RETRIES, DEFAULT_MEMORYENGINE_TASKS_MAX_RETRIES, type_fn=int),
            shutdown_timeout_seconds=v.environ(MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS,
                                               DEFAULT_MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS, type_fn=float),
            high_priority=v.environ(MEMORYENGINE_TASKS_HIGH_PRIORITY, DEFAULT_MEMORYENGINE_TASKS_HIGH_PRIORITY,
                                    type_fn=int),
            finished_retention=v.environ(MEMORYENGINE_TASKS_FINISHED_RETENTION,
                                         DEFAULT_MEMORYENGINE_TASKS_FINISHED_RETENTION, type_fn=int),
        )
