"""Task service package."""
from .base import (
    TaskServicePluginBase,
    EXT_TASK_SERVICE,
    EXT_MULTI_TASK_HANDLERS,
    BackgroundTask,
    QueueFullError,
    TaskPriority,
    TaskService,
    TaskServiceShutdownError,
    TaskStatus,
    TaskSchedule,
    TaskType,
)
from .handlers import TaskHandlerPlugin


__all__ = (
    'BackgroundTask',
    'QueueFullError',
    'TaskService',
    'TaskServicePluginBase',
    'TaskServiceShutdownError',
    'TaskHandlerPlugin',
    'TaskPriority',
    'TaskStatus',
    'TaskSchedule',
    'TaskType',
    'EXT_TASK_SERVICE',
    'EXT_MULTI_TASK_HANDLERS',
)
