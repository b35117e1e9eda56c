"""Consolidation task handler for queued and periodic consolidation."""
from dataclasses import asdict
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ..tasks import TaskHandlerPlugin, TaskSchedule, TaskType
from .base import (
    ConsolidationService,
    EXT_CONSOLIDATION_SERVICE,
    MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS,
    DEFAULT_MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS,
)


class ConsolidationTaskHandler(TaskHandlerPlugin):
    """
    Consolidation task handler.

    Queued by the relationship builder when it records a contradiction, and
    scheduled every ``MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS`` for all users.
    """

    TASK_TYPE = TaskType.CONSOLIDATION

    def get_schedule(self, v: Variables) -> Optional[TaskSchedule]:
        interval = v.environ(MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS,
                             default=DEFAULT_MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS, type_fn=int)
        if interval <= 0:
            return None
        return TaskSchedule(interval_seconds=interval)

    async def handle(self, payload: dict) -> dict:
        consolidation_service: ConsolidationService = self.get_extension(EXT_CONSOLIDATION_SERVICE, self._v)
        logger: Logger = get_logger(self._v, name=self.task_type)

        user_id = payload.get('user_id')
        if user_id:
            result = await consolidation_service.consolidate_user(user_id)
        else:
            logger.info("Running consolidation for all users")
            result = await consolidation_service.consolidate_all()
        return asdict(result)
