"""Repository abstractions for database interactions."""

from .lock_repository import LockRepository
from .market_repository import MarketRepository, MirrorWriteError
from .vote_repository import VoteRepository

__all__ = [
    "LockRepository",
    "MarketRepository",
    "MirrorWriteError",
    "VoteRepository",
]
