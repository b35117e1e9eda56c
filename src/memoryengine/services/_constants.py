"""
Centralized extension point constants for all memory engine services.

All EXT_* constants are defined here to avoid circular import issues.
Individual service base modules re-export the relevant constants.
"""

# ============================================
# Storage
# ============================================
EXT_STORAGE_BACKEND = 'memoryengine-primary-storage'

# ============================================
# Cache
# ============================================
EXT_CACHE_SERVICE = 'memoryengine-cache-service'
EXT_SIMILARITY_CACHE = 'memoryengine-similarity-cache'

# ============================================
# Embedding
# ============================================
EXT_EMBEDDING_PROVIDER = 'embedding-provider'
EXT_EMBEDDING_SERVICE = 'embedding-service'

# ============================================
# LLM
# ============================================
EXT_LLM_SERVICE = 'memoryengine-llm-service'
EXT_LLM_REGISTRY = 'memoryengine-llm-registry'

# ============================================
# Memory pipeline
# ============================================
EXT_EXTRACTION_SERVICE = 'memoryengine-extraction-service'
EXT_DEDUPLICATION_SERVICE = 'memoryengine-deduplication-service'
EXT_RELATIONSHIP_SERVICE = 'memoryengine-relationship-service'
EXT_CONSOLIDATION_SERVICE = 'memoryengine-consolidation-service'
EXT_RETRIEVAL_SERVICE = 'memoryengine-retrieval-service'
EXT_MEMORY_SERVICE = 'memoryengine-memory-service'

# ============================================
# Tasks
# ============================================
EXT_TASK_SERVICE = 'memoryengine-task-service'
EXT_MULTI_TASK_HANDLERS = 'memoryengine-multi-task-handlers'
