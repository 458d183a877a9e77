"""Job and token stores (in-memory and PostgreSQL)."""

from genpool.stores.base import JobNotFoundError, JobStore, TokenStore
from genpool.stores.memory import InMemoryJobStore, InMemoryTokenStore
from genpool.stores.sql import SqlJobStore, SqlTokenStore

__all__ = [
    "JobStore",
    "TokenStore",
    "JobNotFoundError",
    "InMemoryJobStore",
    "InMemoryTokenStore",
    "SqlJobStore",
    "SqlTokenStore",
]
