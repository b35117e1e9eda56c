"""
Pytest configuration and fixtures for memoryengine tests.

Uses scitrera-app-framework dependency injection for service configuration.
Each test session gets an isolated Variables instance that does NOT pull from
environment variables - all configuration is set explicitly for test isolation.

Usage in tests:
    async def test_something(memory_service):
        result = await memory_service.process_message(...)
"""
import logging

import pytest
import pytest_asyncio

from scitrera_app_framework import Variables, get_extension
from memoryengine.config import (
    MEMORYENGINE_EMBEDDING_PROVIDER,
    MEMORYENGINE_STORAGE_BACKEND,
    MEMORYENGINE_DATA_DIR,
    MEMORYENGINE_TASKS_ENABLED,
)
from memoryengine.models.memory import MemoryCategory, MemoryEntry
from memoryengine.services.llm.base import MEMORYENGINE_LLM_REGISTRY
from memoryengine.utils import generate_id


# -----------------------------------------------------------------------------
# Logging Configuration (initialized by test harness, not framework)
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def test_logger() -> logging.Logger:
    """
    Create a root logger for tests.

    The test harness owns logging configuration, not the framework.
    This prevents conflicts and ensures predictable test output.
    """
    logger = logging.getLogger("memoryengine-test")
    logger.setLevel(logging.DEBUG)

    # Add console handler if not already present
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s %(funcName)s() > %(message)s',
            datefmt='%Y/%m/%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


# -----------------------------------------------------------------------------
# Framework Initialization with Test Isolation
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="session")
async def test_configuration():
    """
    Create an isolated Variables instance to provide custom configuration
    of key environment variables for tests. The test's local framework will
    be built on top of this configuration.
    """
    v = Variables()
    v.set(MEMORYENGINE_EMBEDDING_PROVIDER, "mock")
    v.set(MEMORYENGINE_STORAGE_BACKEND, "sqlite")
    v.set(MEMORYENGINE_LLM_REGISTRY, "default")  # default registry is NoOp when no profiles configured
    v.set(MEMORYENGINE_TASKS_ENABLED, "false")  # tests drain the queue with run_pending()
    return v


@pytest_asyncio.fixture(scope="session")
async def test_framework(test_configuration, tmp_path_factory, test_logger):
    """
    Initialize an isolated framework instance for the test session.

    Yields:
        tuple: (v: Variables, services: module) for use in tests
    """
    from memoryengine.dependencies import preconfigure, initialize_services, shutdown_services

    # Create session-scoped temp directory for database
    tmp_dir = tmp_path_factory.mktemp("memoryengine_test")

    v = test_configuration
    v.set(MEMORYENGINE_DATA_DIR, str(tmp_dir))  # set the working directory as a temp directory

    # Initialize framework in test mode (no fault handler, no pyroscope, etc.)
    v, services = preconfigure(v=v, test_mode=True, test_logger=test_logger)

    # Initialize services (connects storage, etc.)
    v = await initialize_services(v)

    yield v, services

    await shutdown_services(v)


@pytest.fixture(scope="session")
def v(test_framework):
    """Isolated Variables instance for tests."""
    v, _ = test_framework
    return v


# -----------------------------------------------------------------------------
# Convenience Service Fixtures
# These just call the DI system with the isolated Variables instance.
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def memory_service(v):
    """Get the memory service."""
    from memoryengine.services.memory import EXT_MEMORY_SERVICE
    return get_extension(EXT_MEMORY_SERVICE, v)


@pytest_asyncio.fixture
async def storage_backend(v):
    """Get the storage backend."""
    from memoryengine.services.storage import EXT_STORAGE_BACKEND
    return get_extension(EXT_STORAGE_BACKEND, v)


@pytest_asyncio.fixture
async def embedding_service(v):
    """Get the embedding service."""
    from memoryengine.services.embedding import EXT_EMBEDDING_SERVICE
    return get_extension(EXT_EMBEDDING_SERVICE, v)


@pytest_asyncio.fixture
async def deduplication_service(v):
    """Get the deduplication service."""
    from memoryengine.services.deduplication import EXT_DEDUPLICATION_SERVICE
    return get_extension(EXT_DEDUPLICATION_SERVICE, v)


@pytest_asyncio.fixture
async def retrieval_service(v):
    """Get the retrieval service."""
    from memoryengine.services.retrieval import EXT_RETRIEVAL_SERVICE
    return get_extension(EXT_RETRIEVAL_SERVICE, v)


@pytest_asyncio.fixture
async def task_service(v):
    """Get the task service."""
    from memoryengine.services.tasks import EXT_TASK_SERVICE
    return get_extension(EXT_TASK_SERVICE, v)


@pytest_asyncio.fixture
async def consolidation_service(v):
    """Get the consolidation service."""
    from memoryengine.services.consolidation import EXT_CONSOLIDATION_SERVICE
    return get_extension(EXT_CONSOLIDATION_SERVICE, v)


# -----------------------------------------------------------------------------
# Test Data Factories
# -----------------------------------------------------------------------------

@pytest.fixture
def user_id() -> str:
    """Fresh user per test; the session database is shared."""
    return generate_id("user", 8)


@pytest.fixture
def make_entry():
    """Factory for MemoryEntry objects with sensible defaults."""

    def _make(user_id: str, content: str, **kwargs) -> MemoryEntry:
        kwargs.setdefault("category", MemoryCategory.CONTEXT)
        return MemoryEntry(id=kwargs.pop("id", generate_id("mem")), user_id=user_id, content=content, **kwargs)

    return _make
