from .lru import LRU

__all__ = ["LRU"]
