from __future__ import annotations

import typing as t

import httpx
import structlog
from pydantic import ValidationError

from batchkeeper.exceptions import NonRetryableError, RetryableError
from batchkeeper.models import ChatCompletion, ProviderBatch
from batchkeeper.providers.base import BaseProvider

if t.TYPE_CHECKING:
    from batchkeeper.models import ChatBody

log = structlog.get_logger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.reason_phrase


def raise_for_status(response: httpx.Response, *, operation: str) -> None:
    """
    Translate an unsuccessful provider response into a classified error.

    Parameters
    ----------
    response : httpx.Response
        The provider response.
    operation : str
        Name of the call, used in the error message.

    Raises
    ------
    RetryableError
        For 429 and 5xx responses.
    NonRetryableError
        For any other 4xx response.
    """
    if response.is_success:
        return
    status_code = response.status_code
    message = f"{operation} failed with status code {status_code}: {_error_message(response)}"
    if status_code == 429 or status_code >= 500:
        raise RetryableError(message, status_code=status_code)
    raise NonRetryableError(message, status_code=status_code)


class OpenAIProvider(BaseProvider):
    """
    Provider adapter for OpenAI's Files and Batch APIs.

    Parameters
    ----------
    api_key : str
        API key sent as a bearer token.
    base_url : str
        API root, without the ``/v1`` suffix.
    client_factory : Callable[[], httpx.AsyncClient] | None
        Builds the client used for each call; tests inject a mock transport here.
    """

    name = "openai"
    file_upload_endpoint = "/v1/files"
    batch_endpoint = "/v1/batches"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com",
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("An OpenAI API key is required when mock mode is off")
        self.base_url = base_url.rstrip("/")
        self._api_headers = {"Authorization": f"Bearer {api_key}"}
        self._client_factory = client_factory or httpx.AsyncClient

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        **kwargs: t.Any,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with self._client_factory() as client:
                response = await client.request(
                    method, url, headers=self._api_headers, **kwargs
                )
        except httpx.TimeoutException as e:
            raise RetryableError(f"{operation} timed out: {e}") from e
        except httpx.TransportError as e:
            raise RetryableError(f"{operation} network error: {e}") from e
        raise_for_status(response, operation=operation)
        return response

    def _parse_batch(self, response: httpx.Response, *, operation: str) -> ProviderBatch:
        try:
            return ProviderBatch.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NonRetryableError(f"{operation} returned a malformed batch object") from e

    async def upload_file(self, content: str) -> str:
        file_content = content.encode("utf-8")
        log.debug(
            event="Uploading batch file",
            provider=self.name,
            base_url=self.base_url,
            bytes=len(file_content),
        )
        response = await self._request(
            "POST",
            self.file_upload_endpoint,
            operation="file upload",
            files={"file": ("batch.jsonl", file_content, "application/jsonl")},
            data={"purpose": "batch"},
        )
        return response.json()["id"]

    async def create_batch(self, input_file_id: str) -> ProviderBatch:
        payload = {
            "input_file_id": input_file_id,
            "endpoint": self.chat_completions_endpoint,
            "completion_window": self.completion_window,
        }
        log.debug(
            event="Sending batch request",
            url=f"{self.base_url}{self.batch_endpoint}",
            payload=payload,
        )
        response = await self._request(
            "POST", self.batch_endpoint, operation="batch creation", json=payload
        )
        return self._parse_batch(response, operation="batch creation")

    async def get_batch_status(self, batch_id: str) -> ProviderBatch:
        response = await self._request(
            "GET", f"{self.batch_endpoint}/{batch_id}", operation="batch status"
        )
        return self._parse_batch(response, operation="batch status")

    async def download_file(self, file_id: str) -> str:
        response = await self._request(
            "GET", f"{self.file_upload_endpoint}/{file_id}/content", operation="file download"
        )
        return response.text

    async def complete_chat(self, body: "ChatBody") -> ChatCompletion:
        response = await self._request(
            "POST",
            self.chat_completions_endpoint,
            operation="chat completion",
            json=body.model_dump(mode="json", exclude_none=True),
        )
        try:
            return ChatCompletion.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NonRetryableError("chat completion returned a malformed body") from e
