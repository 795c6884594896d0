from __future__ import annotations

import json
import typing as t
from abc import ABC, abstractmethod

import structlog

if t.TYPE_CHECKING:
    from batchkeeper.models import BatchRequestLine, ChatBody, ChatCompletion, ProviderBatch

log = structlog.get_logger(__name__)


def encode_jsonl(lines: t.Sequence["BatchRequestLine"]) -> str:
    """
    Serialize batch request lines as newline-delimited JSON.

    Parameters
    ----------
    lines : Sequence[BatchRequestLine]
        Request lines, one per processing request.

    Returns
    -------
    str
        The file content.
    """
    return "\n".join(
        json.dumps(line.model_dump(mode="json", exclude_none=True)) for line in lines
    )


def decode_custom_ids(content: str) -> list[str]:
    """
    Extract the ``custom_id`` of every line of a JSONL input file.

    Blank lines are ignored. Lines that are not JSON objects with a ``custom_id``
    raise ``ValueError``.
    """
    custom_ids: list[str] = []
    for line_number, raw in enumerate(content.splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            custom_id = json.loads(raw)["custom_id"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed input line {line_number}") from e
        custom_ids.append(str(custom_id))
    return custom_ids


class BaseProvider(ABC):
    """
    Standard interface to an asynchronous batch API.

    Providers implement the four batch operations plus a direct chat completion
    used by the individual retry path. Implementations raise ``RetryableError`` or
    ``NonRetryableError`` so the gateway can decide whether to try again.
    """

    name: str = "base"
    completion_window: str = "24h"
    chat_completions_endpoint: str = "/v1/chat/completions"

    @abstractmethod
    async def upload_file(self, content: str) -> str:
        """
        Upload a JSONL batch input file.

        Returns
        -------
        str
            Provider file id.
        """

    @abstractmethod
    async def create_batch(self, input_file_id: str) -> "ProviderBatch":
        """Create a batch job from an uploaded input file."""

    @abstractmethod
    async def get_batch_status(self, batch_id: str) -> "ProviderBatch":
        """Poll a batch job."""

    @abstractmethod
    async def download_file(self, file_id: str) -> str:
        """Download the content of a provider file."""

    @abstractmethod
    async def complete_chat(self, body: "ChatBody") -> "ChatCompletion":
        """Run one chat completion outside of any batch."""
