from .async_provider import AsyncMongoPlanStore, MongoPlanStoreConfig

__all__ = [
    'AsyncMongoPlanStore',
    'MongoPlanStoreConfig',
]
