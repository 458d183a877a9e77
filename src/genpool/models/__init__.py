"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
before create_all runs.
"""

from genpool.models.job import (
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    is_durable_reference,
)
from genpool.models.rotation_cursor import RotationCursor
from genpool.models.token import ProviderToken

__all__ = [
    "GenerationJob",
    "JobStatus",
    "InvalidStateTransition",
    "is_durable_reference",
    "ProviderToken",
    "RotationCursor",
]
