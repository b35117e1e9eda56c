"""Configuration keys and defaults for the memory engine.

Every key is read through ``scitrera_app_framework.Variables`` so values may come
from the environment or be set directly on a Variables instance (tests, CLI).
Service-specific keys that only one implementation reads live next to that
implementation.
"""
import os
from enum import Enum

# ============================================
# Data Home Directory
# ============================================
MEMORYENGINE_DATA_DIR = 'MEMORYENGINE_DATA_DIR'


# ============================================
# Embedding Providers
# ============================================
class EmbeddingProviderType(str, Enum):
    """Available embedding provider types."""

    OPENAI = "openai"  # OpenAI API (also works with any OpenAI-compatible endpoint)
    GOOGLE = "google"  # Google GenAI API
    MOCK = "mock"  # deterministic bag-of-words vectors, offline and test use


MEMORYENGINE_EMBEDDING_PROVIDER = 'MEMORYENGINE_EMBEDDING_PROVIDER'
DEFAULT_MEMORYENGINE_EMBEDDING_PROVIDER = EmbeddingProviderType.OPENAI
MEMORYENGINE_EMBEDDING_MODEL = 'MEMORYENGINE_EMBEDDING_MODEL'
MEMORYENGINE_EMBEDDING_DIMENSIONS = 'MEMORYENGINE_EMBEDDING_DIMENSIONS'

# ============================================
# Embedding Service
# ============================================
MEMORYENGINE_EMBEDDING_SERVICE = 'MEMORYENGINE_EMBEDDING_SERVICE'
DEFAULT_MEMORYENGINE_EMBEDDING_SERVICE = 'default'

MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS = 'MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS'
DEFAULT_MEMORYENGINE_EMBEDDING_CACHE_TTL_SECONDS = 3600
MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS = 'MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS'
DEFAULT_MEMORYENGINE_EMBEDDING_TIMEOUT_SECONDS = 10.0

# ============================================
# Circuit Breaker (shared by embedding and LLM services)
# ============================================
MEMORYENGINE_CIRCUIT_BREAKER_FAILURES = 'MEMORYENGINE_CIRCUIT_BREAKER_FAILURES'
DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES = 5
MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS = 'MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS'
DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS = 60.0

# ============================================
# Storage Backend
# ============================================
MEMORYENGINE_STORAGE_BACKEND = 'MEMORYENGINE_STORAGE_BACKEND'
DEFAULT_MEMORYENGINE_STORAGE_BACKEND = 'sqlite'

MEMORYENGINE_SQLITE_STORAGE_PATH = 'MEMORYENGINE_SQLITE_STORAGE_PATH'
DEFAULT_MEMORYENGINE_SQLITE_STORAGE_PATH = "memoryengine.db"

# ============================================
# Cache Service
# ============================================
MEMORYENGINE_CACHE_SERVICE = 'MEMORYENGINE_CACHE_SERVICE'
DEFAULT_MEMORYENGINE_CACHE_SERVICE = 'lru'

# ============================================
# Similarity Cache
# ============================================
MEMORYENGINE_SIMILARITY_SERVICE = 'MEMORYENGINE_SIMILARITY_SERVICE'
DEFAULT_MEMORYENGINE_SIMILARITY_SERVICE = 'default'

# ============================================
# Extraction Service
# ============================================
MEMORYENGINE_EXTRACTION_SERVICE = 'MEMORYENGINE_EXTRACTION_SERVICE'
DEFAULT_MEMORYENGINE_EXTRACTION_SERVICE = 'default'

# ============================================
# Deduplication Service
# ============================================
MEMORYENGINE_DEDUPLICATION_SERVICE = 'MEMORYENGINE_DEDUPLICATION_SERVICE'
DEFAULT_MEMORYENGINE_DEDUPLICATION_SERVICE = 'default'

# ============================================
# Relationship Graph
# ============================================
MEMORYENGINE_RELATIONSHIP_SERVICE = 'MEMORYENGINE_RELATIONSHIP_SERVICE'
DEFAULT_MEMORYENGINE_RELATIONSHIP_SERVICE = 'default'

# ============================================
# Consolidation
# ============================================
MEMORYENGINE_CONSOLIDATION_SERVICE = 'MEMORYENGINE_CONSOLIDATION_SERVICE'
DEFAULT_MEMORYENGINE_CONSOLIDATION_SERVICE = 'default'

# ============================================
# Retrieval
# ============================================
MEMORYENGINE_RETRIEVAL_SERVICE = 'MEMORYENGINE_RETRIEVAL_SERVICE'
DEFAULT_MEMORYENGINE_RETRIEVAL_SERVICE = 'default'

# ============================================
# Memory Service (orchestration)
# ============================================
MEMORYENGINE_MEMORY_SERVICE = 'MEMORYENGINE_MEMORY_SERVICE'
DEFAULT_MEMORYENGINE_MEMORY_SERVICE = 'default'

# ============================================
# Task Service
# ============================================
MEMORYENGINE_TASK_PROVIDER = 'MEMORYENGINE_TASK_PROVIDER'
DEFAULT_MEMORYENGINE_TASK_PROVIDER = 'worker-pool'

MEMORYENGINE_TASKS_ENABLED = 'MEMORYENGINE_TASKS_ENABLED'
DEFAULT_MEMORYENGINE_TASKS_ENABLED = True
MEMORYENGINE_TASKS_WORKERS = 'MEMORYENGINE_TASKS_WORKERS'
DEFAULT_MEMORYENGINE_TASKS_WORKERS = (os.cpu_count() or 2) * 2
MEMORYENGINE_TASKS_QUEUE_CAPACITY = 'MEMORYENGINE_TASKS_QUEUE_CAPACITY'
DEFAULT_MEMORYENGINE_TASKS_QUEUE_CAPACITY = 1000
MEMORYENGINE_TASKS_TIMEOUT_SECONDS = 'MEMORYENGINE_TASKS_TIMEOUT_SECONDS'
DEFAULT_MEMORYENGINE_TASKS_TIMEOUT_SECONDS = 30.0
MEMORYENGINE_TASKS_MAX_RETRIES = 'MEMORYENGINE_TASKS_MAX_RETRIES'
DEFAULT_MEMORYENGINE_TASKS_MAX_RETRIES = 3
MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS = 'MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS'
DEFAULT_MEMORYENGINE_TASKS_SHUTDOWN_TIMEOUT_SECONDS = 10.0
MEMORYENGINE_TASKS_HIGH_PRIORITY = 'MEMORYENGINE_TASKS_HIGH_PRIORITY'
DEFAULT_MEMORYENGINE_TASKS_HIGH_PRIORITY = 2
MEMORYENGINE_TASKS_FINISHED_RETENTION = 'MEMORYENGINE_TASKS_FINISHED_RETENTION'
DEFAULT_MEMORYENGINE_TASKS_FINISHED_RETENTION = 1000
