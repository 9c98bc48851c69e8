"""In-process stores."""

from .rate_cache import RateCache, close_key, rate_key
from .transient_store import StoreSnapshot, TransientStore

__all__ = [
    "RateCache",
    "StoreSnapshot",
    "TransientStore",
    "close_key",
    "rate_key",
]
