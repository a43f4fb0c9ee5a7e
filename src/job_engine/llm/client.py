import logging
from typing import Any

import httpx

from job_engine.exceptions import LlmApiError
from job_engine.models import LlmOptions

logger = logging.getLogger(__name__)

BATCH_HTTP_TIMEOUT = 60.0  # seconds


class LlmClient:
    """
    Thin async wrapper over an OpenAI-compatible API: chat completions,
    file upload/download and the batch endpoints.

    Raises LlmApiError on any non-success status; transport errors
    (httpx.HTTPError, including timeouts) propagate unchanged.
    """

    def __init__(self, options: LlmOptions):
        self.options = options

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.options.api_key}"}

    @staticmethod
    def _check(response: httpx.Response, operation: str) -> None:
        if not response.is_success:
            logger.warning(f"LLM API {operation} returned HTTP {response.status_code}")
            raise LlmApiError(response.status_code, operation)

    async def chat_completion(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST one chat-completions request, aborting after the configured timeout."""
        async with httpx.AsyncClient(
            timeout=self.options.timeout_ms / 1000,
            headers=self._auth_headers,
        ) as client:
            response = await client.post(self.options.endpoint, json=body)
        self._check(response, "llm_http")
        return response.json()

    async def upload_batch_file(self, jsonl: str, filename: str) -> str:
        async with httpx.AsyncClient(
            timeout=BATCH_HTTP_TIMEOUT, headers=self._auth_headers
        ) as client:
            response = await client.post(
                f"{self.options.base_url}/files",
                data={"purpose": "batch"},
                files={"file": (filename, jsonl.encode("utf-8"), "application/jsonl")},
            )
        self._check(response, "file_upload")
        return response.json()["id"]

    async def create_batch(
        self, input_file_id: str, metadata: dict[str, str]
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=BATCH_HTTP_TIMEOUT, headers=self._auth_headers
        ) as client:
            response = await client.post(
                f"{self.options.base_url}/batches",
                json={
                    "input_file_id": input_file_id,
                    "endpoint": "/v1/chat/completions",
                    "completion_window": self.options.batch_completion_window,
                    "metadata": metadata,
                },
            )
        self._check(response, "batch_create")
        return response.json()

    async def retrieve_batch(self, batch_id: str) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=BATCH_HTTP_TIMEOUT, headers=self._auth_headers
        ) as client:
            response = await client.get(f"{self.options.base_url}/batches/{batch_id}")
        self._check(response, "batch_retrieve")
        return response.json()

    async def download_file(self, file_id: str) -> str:
        async with httpx.AsyncClient(
            timeout=BATCH_HTTP_TIMEOUT, headers=self._auth_headers
        ) as client:
            response = await client.get(f"{self.options.base_url}/files/{file_id}/content")
        self._check(response, "file_download")
        return response.text
