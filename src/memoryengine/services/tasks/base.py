"""
Task Service - Base classes and protocols.

Background task queue for work that must stay off the chat path: memory
processing, similarity batches, contextual retrieval and consolidation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from logging import Logger
from typing import Any, Awaitable, Callable, Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_TASK_PROVIDER, DEFAULT_MEMORYENGINE_TASK_PROVIDER
from ...utils import utc_now
from .._constants import EXT_TASK_SERVICE, EXT_MULTI_TASK_HANDLERS

TaskHandler = Callable[[dict], Awaitable[Any]]


class TaskType(str, Enum):
    """Built-in task types."""
    SIMILARITY = "similarity"
    CONTEXTUAL_RETRIEVAL = "contextual-retrieval"
    MEMORY_PROCESSING = "memory-processing"
    CONSOLIDATION = "consolidation"


class TaskPriority(IntEnum):
    """Lower value runs first."""
    HIGH = 1  # contextual retrieval
    NORMAL = 5  # memory processing, similarity
    LOW = 9  # consolidation


class TaskStatus(str, Enum):
    """Task execution status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


class QueueFullError(Exception):
    """The queue is at capacity and the task's priority does not bypass it. Retry later."""
    retryable = True

    def __init__(self, task_type: str, capacity: int):
        super().__init__(f"Task queue full ({capacity} pending), rejected {task_type} task")
        self.task_type = task_type
        self.capacity = capacity


class TaskServiceShutdownError(Exception):
    """The task service is shutting down and no longer accepts tasks."""
    pass


@dataclass
class TaskSchedule:
    """Recurring enqueue of one task type."""
    interval_seconds: int
    default_payload: dict = field(default_factory=dict)
    priority: int = TaskPriority.LOW


@dataclass
class BackgroundTask:
    """A unit of queued background work."""
    id: str
    type: str
    priority: int
    payload: dict
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    attempts: int = 0
    error: Optional[str] = None
    result: Any = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskService(ABC):
    """
    Interface for background task management.

    NOTE: This is a pure ABC - no plugin inheritance here.
    Plugin lifecycle is handled by TaskServicePluginBase.
    """

    @abstractmethod
    async def enqueue_task(
            self,
            task_type: str,
            payload: dict,
            priority: int = TaskPriority.NORMAL,
    ) -> str:
        """
        Queue a task and return its ID immediately.

        Raises:
            QueueFullError: queue at capacity and priority is not high enough to bypass it
            TaskServiceShutdownError: service is shutting down
        """
        pass

    @abstractmethod
    async def schedule_task(
            self,
            task_type: str,
            payload: dict,
            delay_seconds: int = 0,
            priority: int = TaskPriority.NORMAL,
    ) -> str:
        """
        Schedule a task for background execution after an optional delay.

        Returns:
            Task ID for tracking
        """
        pass

    @abstractmethod
    async def schedule_recurring(
            self,
            task_type: str,
            interval_seconds: int,
            payload: dict,
            priority: int = TaskPriority.LOW,
    ) -> Optional[str]:
        """
        Enqueue a task every ``interval_seconds``.

        Returns:
            Schedule ID for cancellation, or None when background tasks are disabled
        """
        pass

    @abstractmethod
    async def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a pending task or recurring schedule.

        Returns:
            True if cancelled, False if not found or already running/finished
        """
        pass

    @abstractmethod
    async def get_task_status(self, task_id: str) -> TaskStatus:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[BackgroundTask]:
        pass

    @abstractmethod
    def list_tasks(
            self,
            status: Optional[TaskStatus] = None,
            task_type: Optional[str] = None,
    ) -> list[BackgroundTask]:
        """Known tasks in creation order, optionally filtered."""
        pass

    @abstractmethod
    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        """
        Register a handler for a task type.

        Called by the handler setup plugin during startup. The handler's return
        value is stored as the task result.
        """
        pass

    @abstractmethod
    def get_stats(self) -> dict:
        pass

    async def start(self) -> None:
        """Start background execution, if the implementation has any."""
        pass

    async def shutdown(self, timeout_seconds: Optional[float] = None) -> None:
        """Stop accepting tasks and drain what is queued within the timeout."""
        pass


# noinspection PyAbstractClass
class TaskServicePluginBase(Plugin):
    """
    Base plugin for TaskService implementations.

    Workers start once the event loop is running and are drained on shutdown.
    """

    # Subclasses MUST set this to their provider name
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_TASK_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_TASK_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_TASK_PROVIDER, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_TASK_PROVIDER, DEFAULT_MEMORYENGINE_TASK_PROVIDER)

    def get_dependencies(self, v: Variables):
        return ()

    async def async_ready(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, TaskService):
            await value.start()
        return

    async def async_stopping(self, v: Variables, logger: Logger, value: object | None) -> None:
        if isinstance(value, TaskService):
            await value.shutdown()
        return

