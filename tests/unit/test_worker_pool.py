"""Unit tests for WorkerPoolTaskService."""
import asyncio

import pytest

from memoryengine.services.tasks import QueueFullError, TaskPriority, TaskServiceShutdownError, TaskStatus
from memoryengine.services.tasks.worker_pool import WorkerPoolTaskService


def _pool(**kwargs) -> WorkerPoolTaskService:
    kwargs.setdefault("tasks_enabled", False)
    return WorkerPoolTaskService(**kwargs)


class TestQueueing:

    @pytest.mark.asyncio
    async def test_priority_order(self):
        pool = _pool()
        ran = []

        async def handler(payload):
            ran.append(payload["name"])

        pool.register_handler("job", handler)
        await pool.enqueue_task("job", {"name": "low"}, priority=TaskPriority.LOW)
        await pool.enqueue_task("job", {"name": "normal-1"}, priority=TaskPriority.NORMAL)
        await pool.enqueue_task("job", {"name": "high"}, priority=TaskPriority.HIGH)
        await pool.enqueue_task("job", {"name": "normal-2"}, priority=TaskPriority.NORMAL)

        assert await pool.run_pending() == 4
        assert ran == ["high", "normal-1", "normal-2", "low"]

    @pytest.mark.asyncio
    async def test_result_and_status(self):
        pool = _pool()

        async def handler(payload):
            return payload["x"] * 2

        pool.register_handler("double", handler)
        task_id = await pool.enqueue_task("double", {"x": 21})
        assert await pool.get_task_status(task_id) == TaskStatus.PENDING

        await pool.run_pending()

        assert await pool.get_task_status(task_id) == TaskStatus.COMPLETED
        assert pool.get_task(task_id).result == 42
        assert await pool.get_task_status("task_missing") == TaskStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_queue_full_rejects_normal_but_admits_high(self):
        pool = _pool(queue_capacity=2)
        pool.register_handler("job", lambda payload: asyncio.sleep(0))

        await pool.enqueue_task("job", {})
        await pool.enqueue_task("job", {})
        with pytest.raises(QueueFullError):
            await pool.enqueue_task("job", {}, priority=TaskPriority.NORMAL)

        high_id = await pool.enqueue_task("job", {}, priority=TaskPriority.HIGH)

        assert await pool.get_task_status(high_id) == TaskStatus.PENDING
        stats = pool.get_stats()
        assert stats["rejected"] == 1
        assert stats["queue_size"] == 3

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        pool = _pool()
        ran = []

        async def handler(payload):
            ran.append(payload)

        pool.register_handler("job", handler)
        task_id = await pool.enqueue_task("job", {"n": 1})

        assert await pool.cancel_task(task_id) is True
        assert await pool.run_pending() == 0
        assert ran == []
        assert await pool.cancel_task(task_id) is False

    @pytest.mark.asyncio
    async def test_list_tasks_filters(self):
        pool = _pool()
        pool.register_handler("a", lambda payload: asyncio.sleep(0))
        await pool.enqueue_task("a", {})
        await pool.enqueue_task("b", {})

        assert len(pool.list_tasks(task_type="a")) == 1
        assert len(pool.list_tasks(status=TaskStatus.PENDING)) == 2


class TestFailures:

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        pool = _pool(max_retries=2)
        attempts = []

        async def flaky(payload):
            attempts.append(1)
            if len(attempts) < 2:
                raise RuntimeError("transient")
            return "ok"

        pool.register_handler("flaky", flaky)
        task_id = await pool.enqueue_task("flaky", {})
        await pool.run_pending()

        task = pool.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.attempts == 2
        assert pool.get_stats()["retried"] == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_marks_failed(self):
        pool = _pool(max_retries=2)

        async def broken(payload):
            raise RuntimeError("permanent")

        pool.register_handler("broken", broken)
        task_id = await pool.enqueue_task("broken", {})
        await pool.run_pending()

        task = pool.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 3
        assert "permanent" in task.error
        stats = pool.get_stats()
        assert stats["failed"] == 1
        assert stats["by_type"]["broken"]["retried"] == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        pool = _pool(task_timeout_seconds=0.05, max_retries=0)

        async def slow(payload):
            await asyncio.sleep(1)

        pool.register_handler("slow", slow)
        task_id = await pool.enqueue_task("slow", {})
        await pool.run_pending()

        task = pool.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert "timed out" in task.error

    @pytest.mark.asyncio
    async def test_missing_handler_fails(self):
        pool = _pool(max_retries=0)
        task_id = await pool.enqueue_task("unknown", {})
        await pool.run_pending()

        assert await pool.get_task_status(task_id) == TaskStatus.FAILED


class TestWorkers:

    @pytest.mark.asyncio
    async def test_workers_drain_queue(self):
        pool = _pool(tasks_enabled=True, workers=2)
        done = asyncio.Event()
        seen = []

        async def handler(payload):
            seen.append(payload["n"])
            if len(seen) == 5:
                done.set()

        pool.register_handler("job", handler)
        await pool.start()
        for n in range(5):
            await pool.enqueue_task("job", {"n": n})

        await asyncio.wait_for(done.wait(), timeout=2)
        await pool.shutdown()

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert pool.get_stats()["processed"] == 5

    @pytest.mark.asyncio
    async def test_delayed_task(self):
        pool = _pool(tasks_enabled=True, workers=1)
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        pool.register_handler("job", handler)
        await pool.start()
        await pool.schedule_task("job", {}, delay_seconds=0.05)

        await asyncio.wait_for(done.wait(), timeout=2)
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_and_rejects_new(self):
        pool = _pool()
        pool.register_handler("job", lambda payload: asyncio.sleep(0))
        task_id = await pool.enqueue_task("job", {})

        await pool.shutdown(timeout_seconds=0.1)

        assert await pool.get_task_status(task_id) == TaskStatus.CANCELLED
        with pytest.raises(TaskServiceShutdownError):
            await pool.enqueue_task("job", {})

    @pytest.mark.asyncio
    async def test_recurring_disabled_without_workers(self):
        pool = _pool()
        assert await pool.schedule_recurring("job", 60, {}) is None


class TestRetention:

    @pytest.mark.asyncio
    async def test_finished_tasks_are_bounded(self):
        pool = _pool(queue_capacity=1000, finished_retention=10)

        async def handler(payload):
            if payload["i"] % 2:
                raise ValueError("odd")
            return payload["i"]

        pool.register_handler("job", handler)
        pool.max_retries = 0
        task_ids = [await pool.enqueue_task("job", {"i": i}) for i in range(200)]

        await pool.run_pending()

        assert len(pool._tasks) == 0
        assert len(pool._finished) == 10
        assert len(pool.list_tasks()) == 10
        assert await pool.get_task_status(task_ids[0]) == TaskStatus.NOT_FOUND
        assert await pool.get_task_status(task_ids[-1]) == TaskStatus.FAILED
        assert await pool.get_task_status(task_ids[-2]) == TaskStatus.COMPLETED
        assert pool.get_stats()["processed"] == 100
        assert pool.get_stats()["failed"] == 100

    @pytest.mark.asyncio
    async def test_cancelled_task_leaves_live_set(self):
        pool = _pool()
        task_id = await pool.enqueue_task("job", {})

        assert await pool.cancel_task(task_id)

        assert task_id not in pool._tasks
        assert await pool.get_task_status(task_id) == TaskStatus.CANCELLED
        assert pool.queue_size == 0
