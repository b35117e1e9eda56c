"""
Framework bootstrap for the memory engine.

Every service is a scitrera-app-framework plugin registered from the
``memoryengine.services`` package; ``get_extension()`` initializes them lazily
in dependency order. Embedding applications call ``initialize_services`` at
startup and ``shutdown_services`` at exit, or wrap both with ``running_engine``.
"""
import logging
from contextlib import asynccontextmanager
from logging import Logger
from typing import AsyncIterator

from scitrera_app_framework import (
    Variables, get_variables, get_logger, init_framework_desktop,
    async_plugins_ready, async_plugins_stopping
)
from .config import MEMORYENGINE_DATA_DIR

# SDK loggers that are noisy at INFO
_QUIET_LOGGERS = (
    'aiosqlite',
    'httpcore.connection',
    'httpcore.http11',
    'httpx',
    'openai._base_client',
    'anthropic._base_client',
    'google_genai.models',
    'urllib3.connectionpool',
)


# noinspection PyTypeHints
def preconfigure(v: Variables = None, test_mode: bool = False, test_logger: Logger = None) -> (Variables, object):
    """Initialize the framework and register service plugins once per Variables instance."""
    from scitrera_app_framework import register_package_plugins
    from . import services

    framework_kwargs = {} if not test_mode else {
        'fault_handler': False,
        'fixed_logger': test_logger,
        'pyroscope': False,
        'shutdown_hooks': False,
    }

    v: Variables = init_framework_desktop(
        'memoryengine',
        base_plugins=False,
        stateful_chdir=True,  # SQLite paths resolve relative to the data dir
        stateful_root_env_key=MEMORYENGINE_DATA_DIR,
        async_auto_enabled=False,  # async_ready / async_stopping are driven below
        v=v,
        **framework_kwargs
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not v.get('__memoryengine_plugins_registered__', default=False):
        get_logger(v).debug('Registering memory engine services')
        register_package_plugins(services.__package__, v, recursive=True)
        v.set('__memoryengine_plugins_registered__', True)

    return v, services


async def initialize_services(v: Variables = None) -> Variables:
    """Initialize every enabled plugin, then run async readiness (storage connect, workers, schedules)."""
    v, _ = preconfigure(v)
    get_logger(v).debug("Initializing services")

    from scitrera_app_framework.core.plugins import init_all_plugins
    init_all_plugins(v, async_enabled=False)
    await async_plugins_ready(v)
    return v


async def shutdown_services(v: Variables = None) -> None:
    """Drain the task queue, close storage and release plugin state."""
    v = get_variables(v)
    get_logger(v).debug("Shutting down services")
    await async_plugins_stopping(v)

    from scitrera_app_framework.core.plugins import shutdown_all_plugins
    shutdown_all_plugins(v)


@asynccontextmanager
async def running_engine(v: Variables = None) -> AsyncIterator[Variables]:
    """``async with running_engine() as v:`` boots services and always shuts them down."""
    v, _ = preconfigure(v)
    v = await initialize_services(v)
    try:
        yield v
    finally:
        await shutdown_services(v)
