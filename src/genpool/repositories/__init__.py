"""Repository layer for genpool.

Provides data access abstractions for jobs, provider tokens and the rotation cursor.
No base classes - each repository is self-contained.
"""

from genpool.repositories.job import GenerationJobRepository
from genpool.repositories.rotation_cursor import RotationCursorRepository
from genpool.repositories.token import ProviderTokenRepository

__all__ = [
    "GenerationJobRepository",
    "ProviderTokenRepository",
    "RotationCursorRepository",
]
