"""Direct-to-caller storage: returns the artifact inline as a base64 data: URL.

Data URLs are not durable references, so a later stage may still replace them.
"""

import base64
from uuid import UUID

from genpool.services.exceptions import StorageValidationError


class DataUrlBackend:
    name = "data_url"

    def __init__(self, max_bytes: int = 75 * 1024 * 1024):
        self.max_bytes = max_bytes

    async def upload(self, data: bytes, job_id: UUID, content_type: str) -> str:
        if len(data) > self.max_bytes:
            raise StorageValidationError(
                f"Artifact of {len(data)} bytes exceeds inline limit of {self.max_bytes} bytes"
            )
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{content_type};base64,{encoded}"
