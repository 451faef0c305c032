"""
LLM Client - streaming chat completions over an OpenAI-compatible API.

Works with any backend that speaks the /chat/completions protocol with
server-sent events (OpenAI, OpenRouter, NVIDIA NIM, Fireworks, vLLM,
Ollama). Reasoning text is taken from delta.reasoning_content or
delta.reasoning, whichever the backend sends.

There is no retry here. A failed request surfaces as one LLMError and the
user decides whether to try again.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from tod.config import LLMConfig
from tod.prompts import get_compact_prompt
from tod.types import StreamChunk, ToolCallFragment

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class ModelClient(Protocol):
    """What the agent loop needs from a model backend."""

    def stream_completion(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamChunk]: ...

    async def create_summary(self, conversation: str) -> str: ...


class LLMClient:
    """
    Async client for OpenAI-compatible streaming chat APIs.

    One httpx.AsyncClient is kept per instance. Callers that stop reading
    a stream early must close the generator (the agent loop does) so the
    underlying response is released.
    """

    def __init__(
        self,
        config: LLMConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client with configuration.

        Args:
            config: LLM configuration (model, API key, etc.)
            transport: Optional httpx transport, used by tests
        """
        self.config = config

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=config.request_timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info(f"LLMClient initialized for model {config.model}")

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "top_p": 1,
            "max_tokens": self.config.max_tokens,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def stream_completion(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat completion.

        Args:
            messages: The outbound message list in OpenAI format
            tools: Tool schemas in OpenAI format (may be empty)

        Yields:
            StreamChunk for every delta that carried something

        Raises:
            LLMError: On HTTP errors, timeouts and network failures
        """
        payload = self._build_payload(messages, tools)
        logger.debug(
            f"Starting stream completion: {len(messages)} messages, "
            f"{len(tools)} tools, model={self.config.model}"
        )

        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(f"API error: HTTP {response.status_code} - {body[:500]}")
                    raise LLMError(
                        f"HTTP {response.status_code}: {_error_message(body)}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    chunk = parse_sse_line(line)
                    if chunk is _DONE:
                        break
                    if chunk is not None:
                        yield chunk

        except httpx.TimeoutException as e:
            logger.error(f"Stream timed out: {e}")
            raise LLMError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error(f"Stream request failed: {e}")
            raise LLMError(f"Request failed: {e}") from e

        logger.debug("Stream completion finished")

    async def create_summary(self, conversation: str) -> str:
        """Summarize a rendered conversation in one non-streaming call."""
        logger.debug(f"Creating conversation summary from {len(conversation)} chars")
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": get_compact_prompt()},
                {"role": "user", "content": conversation},
            ],
            "temperature": self.config.summary_temperature,
            "max_tokens": self.config.summary_max_tokens,
            "stream": False,
        }

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Summary failed: HTTP {e.response.status_code} - {e.response.text[:500]}")
            raise LLMError(
                f"HTTP {e.response.status_code}: {_error_message(e.response.text)}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Summary request failed: {e}")
            raise LLMError(f"Request failed: {e}") from e

        choices = data.get("choices") or [{}]
        summary = (choices[0].get("message") or {}).get("content") or "Failed to generate summary"
        logger.debug(f"Summary created: {len(summary)} chars")
        return summary

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


_DONE = object()


def parse_sse_line(line: str) -> Any:
    """
    Parse one server-sent-event line.

    Returns a StreamChunk, the _DONE sentinel for the terminating event,
    or None for lines that carry nothing (comments, keep-alives, empty
    deltas, malformed JSON).
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    data_str = line[len(SSE_DATA_PREFIX):].strip()
    if data_str == SSE_DONE:
        return _DONE
    try:
        data = json.loads(data_str)
    except json.JSONDecodeError:
        logger.warning(f"Skipping malformed stream event: {data_str[:200]}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Skipping non-object stream event: {data_str[:200]}")
        return None

    if data.get("error"):
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise LLMError(f"Stream error: {message}")

    choices = data.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}

    chunk = StreamChunk(
        content=delta.get("content") or "",
        thinking=delta.get("reasoning_content") or delta.get("reasoning") or "",
    )
    for tc in delta.get("tool_calls") or []:
        function = tc.get("function") or {}
        chunk.tool_calls.append(ToolCallFragment(
            index=tc.get("index", 0),
            id=tc.get("id"),
            name=function.get("name") or "",
            arguments=function.get("arguments") or "",
        ))

    if not (chunk.content or chunk.thinking or chunk.tool_calls):
        return None
    return chunk


def _error_message(body: str) -> str:
    """Pull the human-readable message out of an OpenAI-style error body."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body[:500]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return body[:500]


class LLMError(Exception):
    """Error from the model backend: HTTP status, timeout or network failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
