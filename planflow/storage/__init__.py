from .base import JobStorage
from .memory_storage import MemoryStorage
from .redis_storage import RedisStorage

__all__ = ["JobStorage", "MemoryStorage", "RedisStorage"]
