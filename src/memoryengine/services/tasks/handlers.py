"""
Task handler plugins.

Each handler is a multi-extension under ``EXT_MULTI_TASK_HANDLERS``; the setup
plugin wires every enabled handler into the task service once it exists and
starts the recurring schedules when the framework reports ready.
"""
from abc import ABC, abstractmethod
from logging import Logger
from typing import Any, Iterable, Optional

from scitrera_app_framework import Plugin, Variables, get_extensions

from .base import EXT_MULTI_TASK_HANDLERS, EXT_TASK_SERVICE, TaskSchedule, TaskService, TaskType


class TaskHandlerPlugin(Plugin, ABC):
    """Handles one ``TaskType``; ``handle`` raising marks the attempt failed and retries it."""
    TASK_TYPE: TaskType = None

    _v: Variables = None

    @property
    def task_type(self) -> str:
        return self.TASK_TYPE.value

    @abstractmethod
    async def handle(self, payload: dict) -> Any:
        """The return value is stored as the task result."""
        pass

    def get_schedule(self, v: Variables) -> Optional[TaskSchedule]:
        return None

    def initialize(self, v, logger) -> object | None:
        self._v = v
        return self

    def extension_point_name(self, v: Variables) -> str:
        return EXT_MULTI_TASK_HANDLERS

    def is_enabled(self, v: Variables) -> bool:
        # multi-extension only
        return False

    def is_multi_extension(self, v: Variables) -> bool:
        return True


def _handler_plugins(v: Variables) -> list[TaskHandlerPlugin]:
    return list(get_extensions(EXT_MULTI_TASK_HANDLERS, v).values())


class TaskHandlersSetupPlugin(Plugin):
    """Registers handlers with the task service and starts their schedules."""

    def extension_point_name(self, v: Variables) -> str:
        return EXT_MULTI_TASK_HANDLERS

    def initialize(self, v, logger) -> object | None:
        task_service: TaskService = self.get_extension(EXT_TASK_SERVICE, v)
        handlers = _handler_plugins(v)
        for handler in handlers:
            task_service.register_handler(handler.task_type, handler.handle)
        logger.info('Registered task handlers: %s', ', '.join(sorted(h.task_type for h in handlers)))
        return task_service

    async def async_ready(self, v: Variables, logger: Logger, value: TaskService) -> None:
        for handler in _handler_plugins(v):
            schedule = handler.get_schedule(v)
            if schedule is None:
                continue
            logger.info('Scheduling %s every %ss', handler.task_type, schedule.interval_seconds)
            await value.schedule_recurring(
                handler.task_type,
                schedule.interval_seconds,
                schedule.default_payload,
                priority=schedule.priority,
            )

    def get_dependencies(self, v: Variables) -> Iterable[str] | None:
        return (EXT_TASK_SERVICE,)
