"""
Fault-isolated access to the batch provider.

Each batch operation runs as ``retry(circuit_breaker(timeout(call)))`` with one
breaker per operation kind, so an outage of one endpoint (say file downloads)
does not stop batch creation.
"""

from __future__ import annotations

import asyncio
import typing as t
from enum import StrEnum

import structlog

from batchkeeper.exceptions import RetryableError
from batchkeeper.resilience.circuit_breaker import CircuitBreakerRegistry
from batchkeeper.resilience.retry import RetryPolicy

if t.TYPE_CHECKING:
    from batchkeeper.models import ChatBody, ChatCompletion, ProviderBatch
    from batchkeeper.providers.base import BaseProvider

log = structlog.get_logger(__name__)

T = t.TypeVar("T")


class OperationKind(StrEnum):
    FILE_UPLOAD = "file_upload"
    BATCH_CREATION = "batch_creation"
    BATCH_STATUS = "batch_status"
    FILE_DOWNLOAD = "file_download"
    CHAT_COMPLETION = "chat_completion"


class ProviderGateway:
    """
    Parameters
    ----------
    provider : BaseProvider
        The real or mock provider.
    retry_policy : RetryPolicy
        Shared retry settings.
    breakers : CircuitBreakerRegistry
        Registry holding one breaker per operation kind.
    timeout_seconds : float
        Per-call timeout; exceeding it counts as a retryable failure.
    """

    def __init__(
        self,
        provider: "BaseProvider",
        *,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.timeout_seconds = timeout_seconds
        for kind in (
            OperationKind.FILE_UPLOAD,
            OperationKind.BATCH_CREATION,
            OperationKind.BATCH_STATUS,
            OperationKind.FILE_DOWNLOAD,
        ):
            self.breakers.get(kind)

    async def _with_timeout(
        self, kind: OperationKind, operation: t.Callable[[], t.Awaitable[T]]
    ) -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
        except TimeoutError as e:
            raise RetryableError(
                f"{kind} timed out after {self.timeout_seconds:g}s"
            ) from e

    async def _call(self, kind: OperationKind, operation: t.Callable[[], t.Awaitable[T]]) -> T:
        breaker = self.breakers.get(kind)

        async def attempt() -> T:
            return await breaker.call(lambda: self._with_timeout(kind, operation))

        return await self.retry_policy.call(attempt, operation_name=kind)

    async def upload_file(self, content: str) -> str:
        file_id = await self._call(
            OperationKind.FILE_UPLOAD, lambda: self.provider.upload_file(content)
        )
        log.debug(event="Uploaded batch input file", file_id=file_id, bytes=len(content))
        return file_id

    async def create_batch(self, input_file_id: str) -> "ProviderBatch":
        return await self._call(
            OperationKind.BATCH_CREATION, lambda: self.provider.create_batch(input_file_id)
        )

    async def get_batch_status(self, batch_id: str) -> "ProviderBatch":
        return await self._call(
            OperationKind.BATCH_STATUS, lambda: self.provider.get_batch_status(batch_id)
        )

    async def download_file(self, file_id: str) -> str:
        return await self._call(
            OperationKind.FILE_DOWNLOAD, lambda: self.provider.download_file(file_id)
        )

    async def complete_chat(self, body: "ChatBody") -> "ChatCompletion":
        """Direct completion for the individual retry path; retried but not breaker-guarded."""
        return await self.retry_policy.call(
            lambda: self._with_timeout(
                OperationKind.CHAT_COMPLETION, lambda: self.provider.complete_chat(body)
            ),
            operation_name=OperationKind.CHAT_COMPLETION,
        )

    def circuit_breaker_status(self) -> dict[str, dict[str, t.Any]]:
        return self.breakers.snapshot()

    def reset_circuit_breakers(self) -> None:
        self.breakers.reset_all()
