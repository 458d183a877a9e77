"""Submission and instant-retry engine.

Starts one job at the provider, retrying with a different token on failure:

- Network/timeout error: record a token error, short delay, retry
- Authentication error: disable the token pool-wide, exclude it for this job, retry
- Other provider rejection: record a token error, retry

On success the job moves to processing and a completion poller takes over. When
attempts run out, or no token is left to try, the job fails with a message that
carries the attempt count.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import structlog

from genpool.core.config import Settings
from genpool.models.job import JobStatus
from genpool.models.token import ProviderToken
from genpool.services.exceptions import (
    AuthenticationError,
    ProviderError,
    ResourceExhausted,
    TransientNetworkError,
)
from genpool.services.providers.base import ProviderClient
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import QueuedJob
from genpool.stores.base import JobStore
from genpool.workers.completion_poller import CompletionPoller

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PreAssigned:
    """Use this token for the first attempt (round-robin assignment)."""

    token: ProviderToken


@dataclass(frozen=True)
class Rotate:
    """Ask the registry for the least-recently-used token on every attempt."""


TokenSource = PreAssigned | Rotate


class SubmissionOutcome(str, Enum):
    STARTED = "started"
    FAILED = "failed"


class SubmissionEngine:
    """Starts jobs at the provider with bounded instant retries."""

    def __init__(
        self,
        job_store: JobStore,
        registry: TokenPoolRegistry,
        provider: ProviderClient,
        poller: CompletionPoller,
        settings: Settings,
    ):
        self.job_store = job_store
        self.registry = registry
        self.provider = provider
        self.poller = poller
        self.max_attempts = max(1, settings.max_instant_retries)
        self.retry_delay_seconds = settings.instant_retry_delay_seconds
        self.start_timeout_seconds = settings.start_timeout_seconds

    async def submit(self, job: QueuedJob, source: TokenSource) -> SubmissionOutcome:
        """Start a job, retrying with other tokens on failure.

        Args:
            job: Job to start
            source: PreAssigned(token) for round-robin batches, Rotate() otherwise

        Returns:
            STARTED if the provider accepted the job, FAILED if it was marked failed
        """
        excluded: set[UUID] = set()
        last_error = "unknown error"

        logger.info(
            "job.submission.started",
            job_id=str(job.job_id),
            tenant_id=job.tenant_id,
            source=type(source).__name__,
        )

        for attempt in range(1, self.max_attempts + 1):
            try:
                token = await self._resolve_token(source, attempt, excluded)
            except ResourceExhausted:
                return await self._fail(
                    job,
                    f"No active tokens available after excluding {len(excluded)} disabled tokens "
                    f"(attempt {attempt}/{self.max_attempts})",
                    attempts=attempt - 1,
                )

            try:
                await self.registry.record_usage(token.id)
                handle = await asyncio.wait_for(
                    self.provider.start_generation(token.secret, job.payload),
                    timeout=self.start_timeout_seconds,
                )
            except AuthenticationError as e:
                last_error = f"Authentication failed: {e}"
                excluded.add(token.id)
                await self.registry.disable(token.id, reason=str(e))
                self._log_retry(job, token, attempt, "AuthenticationError", str(e))
            except TimeoutError:
                last_error = f"Start request timed out after {self.start_timeout_seconds:g}s"
                self.registry.record_error(token.id)
                self._log_retry(job, token, attempt, "TimeoutError", last_error)
            except TransientNetworkError as e:
                last_error = f"Network error: {e}"
                self.registry.record_error(token.id)
                self._log_retry(job, token, attempt, "TransientNetworkError", str(e))
            except ProviderError as e:
                last_error = f"Provider error: {e}"
                self.registry.record_error(token.id)
                self._log_retry(job, token, attempt, type(e).__name__, str(e))
            else:
                return await self._started(job, token, handle, attempt)

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay_seconds)

        return await self._fail(
            job,
            f"{last_error} (failed after {self.max_attempts} attempts)",
            attempts=self.max_attempts,
        )

    async def _resolve_token(
        self, source: TokenSource, attempt: int, excluded: set[UUID]
    ) -> ProviderToken:
        if attempt == 1 and isinstance(source, PreAssigned):
            token = source.token
            if token.id not in excluded and await self.registry.is_active(token.id):
                return token
            logger.info("job.submission.preassigned_unavailable", token_id=str(token.id))

        token = await self.registry.select_next(excluding=excluded)
        if token.id in excluded:
            # Best-effort pick handed back a token this job already excluded
            raise ResourceExhausted("Every active token is excluded for this job")
        return token

    async def _started(
        self, job: QueuedJob, token: ProviderToken, handle: str, attempt: int
    ) -> SubmissionOutcome:
        await self.job_store.update_job_fields(
            job.job_id,
            token_id=token.id,
            operation_handle=handle,
            instant_retry_count=attempt - 1,
        )
        await self.job_store.update_job_status(job.job_id, job.tenant_id, JobStatus.PROCESSING)

        logger.info(
            "job.submission.succeeded",
            job_id=str(job.job_id),
            tenant_id=job.tenant_id,
            token=token.display_name(),
            operation_handle=handle,
            attempt_number=attempt,
        )
        self.poller.start(job.job_id, job.tenant_id, handle, token)
        return SubmissionOutcome.STARTED

    async def _fail(self, job: QueuedJob, message: str, attempts: int) -> SubmissionOutcome:
        await self.job_store.update_job_fields(job.job_id, instant_retry_count=attempts)
        await self.job_store.update_job_status(
            job.job_id, job.tenant_id, JobStatus.FAILED, error=message
        )
        logger.error(
            "job.submission.failed",
            job_id=str(job.job_id),
            tenant_id=job.tenant_id,
            error_message=message,
            attempts=attempts,
        )
        return SubmissionOutcome.FAILED

    def _log_retry(
        self, job: QueuedJob, token: ProviderToken, attempt: int, error_type: str, message: str
    ) -> None:
        logger.warning(
            "job.submission.retry",
            job_id=str(job.job_id),
            token=token.display_name(),
            attempt_number=attempt,
            max_attempts=self.max_attempts,
            error_type=error_type,
            error_message=message,
        )
