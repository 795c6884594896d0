"""
Deterministic in-process stand-in for the batch API.

Batches move through ``validating`` -> ``in_progress`` -> ``finalizing`` ->
``completed`` as the injected clock advances, and completed batches expose an
output file with one successful line per uploaded ``custom_id``. Tests can queue
failures per operation, force a batch status or replace an output file.
"""

from __future__ import annotations

import json
import typing as t
from collections import defaultdict, deque
from dataclasses import dataclass

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.exceptions import NonRetryableError
from batchkeeper.models import ChatCompletion, ProviderBatch, RequestCounts
from batchkeeper.providers.base import BaseProvider, decode_custom_ids
from batchkeeper.status import ProviderBatchStatus

if t.TYPE_CHECKING:
    from batchkeeper.models import ChatBody

log = structlog.get_logger(__name__)

# seconds since creation at which each stage starts
STAGES: tuple[tuple[float, ProviderBatchStatus], ...] = (
    (180.0, ProviderBatchStatus.COMPLETED),
    (120.0, ProviderBatchStatus.FINALIZING),
    (30.0, ProviderBatchStatus.IN_PROGRESS),
    (0.0, ProviderBatchStatus.VALIDATING),
)

MOCK_ANALYSIS: dict[str, str] = {
    "sentiment": "NEUTRAL",
    "category": "UNRECOGNIZED_OTHER",
    "summary": "Mock AI analysis result",
    "language": "en",
}
MOCK_USAGE: dict[str, int] = {"prompt_tokens": 50, "completion_tokens": 30, "total_tokens": 80}

Operation = t.Literal[
    "upload_file", "create_batch", "get_batch_status", "download_file", "complete_chat"
]


def mock_completion_body(content: str | None = None, *, model: str = "gpt-4o-mini") -> dict:
    return {
        "id": "chatcmpl-mock",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": content if content is not None else json.dumps(MOCK_ANALYSIS),
                },
                "finish_reason": "stop",
            }
        ],
        "usage": dict(MOCK_USAGE),
    }


def mock_success_line(custom_id: str, content: str | None = None) -> str:
    return json.dumps(
        {
            "id": f"batch_req_{custom_id}",
            "custom_id": custom_id,
            "response": {
                "status_code": 200,
                "request_id": f"req_{custom_id}",
                "body": mock_completion_body(content),
            },
            "error": None,
        }
    )


def mock_error_line(custom_id: str, message: str, *, code: str = "server_error") -> str:
    return json.dumps(
        {
            "id": f"batch_req_{custom_id}",
            "custom_id": custom_id,
            "response": None,
            "error": {"code": code, "message": message},
        }
    )


@dataclass
class _MockBatch:
    id: str
    input_file_id: str
    custom_ids: list[str]
    created_at: float
    forced_status: str | None = None
    output_file_id: str | None = None


class MockProvider(BaseProvider):
    """
    Parameters
    ----------
    clock : Clock | None
        Drives stage progression. Defaults to the system clock.
    """

    name = "mock"

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._files: dict[str, str] = {}
        self._file_custom_ids: dict[str, list[str]] = {}
        self._batches: dict[str, _MockBatch] = {}
        self._output_overrides: dict[str, str] = {}
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._counter = 0
        self.calls: dict[str, int] = defaultdict(int)
        self.chat_bodies: list["ChatBody"] = []

    def _next_id(self, *, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-mock-{self._counter}"

    def _enter(self, operation: Operation) -> None:
        self.calls[operation] += 1
        pending = self._failures.get(operation)
        if pending:
            error = pending.popleft()
            log.debug(event="Injecting mock failure", operation=operation, error=str(error))
            raise error

    def fail_next(
        self,
        operation: Operation,
        error: BaseException,
        *,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures[operation].extend([error] * times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def force_status(self, batch_id: str, status: str | None) -> None:
        """Pin a batch to a provider status, or unpin it with ``None``."""
        self._get_batch(batch_id).forced_status = status

    def set_output(self, batch_id: str, content: str) -> None:
        """Replace the output file content a completed batch will expose."""
        self._output_overrides[batch_id] = content
        batch = self._get_batch(batch_id)
        if batch.output_file_id is not None:
            self._files[batch.output_file_id] = content

    def batch_custom_ids(self, batch_id: str) -> list[str]:
        return list(self._get_batch(batch_id).custom_ids)

    def _get_batch(self, batch_id: str) -> _MockBatch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise NonRetryableError(f"No batch found with id {batch_id}", status_code=404) from None

    def _current_status(self, batch: _MockBatch) -> str:
        if batch.forced_status is not None:
            return batch.forced_status
        elapsed = self._clock.monotonic() - batch.created_at
        for threshold, status in STAGES:
            if elapsed >= threshold:
                return status
        return ProviderBatchStatus.VALIDATING

    def _to_provider_batch(self, batch: _MockBatch) -> ProviderBatch:
        status = self._current_status(batch)
        completed = status == ProviderBatchStatus.COMPLETED
        if completed and batch.output_file_id is None:
            batch.output_file_id = f"file-mock-output-{batch.id}"
            self._files[batch.output_file_id] = self._output_overrides.get(
                batch.id,
                "\n".join(mock_success_line(custom_id) for custom_id in batch.custom_ids),
            )
        total = len(batch.custom_ids)
        return ProviderBatch(
            id=batch.id,
            status=status,
            input_file_id=batch.input_file_id,
            output_file_id=batch.output_file_id if completed else None,
            request_counts=RequestCounts(total=total, completed=total if completed else 0),
        )

    async def upload_file(self, content: str) -> str:
        self._enter("upload_file")
        try:
            custom_ids = decode_custom_ids(content)
        except ValueError as e:
            raise NonRetryableError(f"Invalid batch input file: {e}", status_code=400) from e
        file_id = self._next_id(prefix="file")
        self._files[file_id] = content
        self._file_custom_ids[file_id] = custom_ids
        log.debug(event="Mock file uploaded", file_id=file_id, line_count=len(custom_ids))
        return file_id

    async def create_batch(self, input_file_id: str) -> ProviderBatch:
        self._enter("create_batch")
        if input_file_id not in self._file_custom_ids:
            raise NonRetryableError(f"No file found with id {input_file_id}", status_code=404)
        batch = _MockBatch(
            id=self._next_id(prefix="batch"),
            input_file_id=input_file_id,
            custom_ids=self._file_custom_ids[input_file_id],
            created_at=self._clock.monotonic(),
        )
        self._batches[batch.id] = batch
        log.debug(event="Mock batch created", batch_id=batch.id)
        return self._to_provider_batch(batch)

    async def get_batch_status(self, batch_id: str) -> ProviderBatch:
        self._enter("get_batch_status")
        return self._to_provider_batch(self._get_batch(batch_id))

    async def download_file(self, file_id: str) -> str:
        self._enter("download_file")
        try:
            return self._files[file_id]
        except KeyError:
            raise NonRetryableError(f"No file found with id {file_id}", status_code=404) from None

    async def complete_chat(self, body: "ChatBody") -> ChatCompletion:
        self._enter("complete_chat")
        self.chat_bodies.append(body)
        return ChatCompletion.model_validate(mock_completion_body(model=body.model))
