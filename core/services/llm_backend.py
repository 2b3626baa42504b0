"""
Language-model backend client.

The orchestrator talks to any chat-completions style API through the
ChatBackend interface. OpenAICompatibleBackend is the shipped implementation:
plain REST over aiohttp with retries, a request timeout and server-sent-event
streaming.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from core.exceptions import ModelBackendError

logger = logging.getLogger(__name__)

STREAM_SENTINEL = "[DONE]"
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class ChatBackend(ABC):
    """
    Contract for the external model.

    chat() returns ``{"choices": [{"message": {"role", "content"}}], "usage", "model"}``;
    chat_stream() yields content deltas until the stream ends.
    """

    @abstractmethod
    async def chat(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def chat_stream(self, request: Dict[str, Any]) -> AsyncIterator[str]:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        return None


def build_chat_request(messages: List[Dict[str, str]], model: str, temperature: float,
                       max_tokens: Optional[int] = None, stream: bool = False) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "stream": stream,
    }
    if max_tokens:
        request["max_tokens"] = max_tokens
    return request


def extract_reply(response: Dict[str, Any]) -> str:
    try:
        return response["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        raise ModelBackendError(f"Malformed chat response: {e}") from e


class OpenAICompatibleBackend(ChatBackend):
    """Chat-completions client for OpenAI-compatible endpoints (DeepSeek by default)"""

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.deepseek.com/v1",
                 model: str = "deepseek-chat", timeout: float = 30.0, max_retries: int = 2,
                 max_tokens: int = 2000):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._request_timeout = timeout
        self._max_retries = max_retries
        self.max_tokens = max_tokens
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings) -> "OpenAICompatibleBackend":
        return cls(
            api_key=settings.LLM_API_KEY,
            base_url=settings.LLM_BASE_URL,
            model=settings.LLM_MODEL,
            timeout=settings.LLM_TIMEOUT,
            max_retries=settings.LLM_MAX_RETRIES,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    def _payload(self, request: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        payload = dict(request)
        payload.setdefault("model", self.model)
        payload.setdefault("max_tokens", self.max_tokens)
        payload["stream"] = stream
        return payload

    async def chat(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ModelBackendError("No API key configured for the model backend")

        payload = self._payload(request, stream=False)
        url = f"{self.base_url}/chat/completions"
        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries + 1):
            try:
                async with self._get_session().post(
                    url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self._request_timeout),
                ) as response:
                    if response.status == 200:
                        data = await response.json()
                        extract_reply(data)
                        return data

                    error_text = await response.text()
                    last_error = ModelBackendError(
                        f"Model API error {response.status}: {error_text[:200]}", status=response.status
                    )
                    if response.status not in RETRYABLE_STATUSES:
                        raise last_error
                    logger.warning(f"Model API returned {response.status} (attempt {attempt + 1}/{self._max_retries + 1})")

            except asyncio.TimeoutError as e:
                logger.warning(f"Model API timeout (attempt {attempt + 1}/{self._max_retries + 1})")
                last_error = ModelBackendError(f"Model API timed out after {self._request_timeout}s")
                last_error.__cause__ = e
            except aiohttp.ClientError as e:
                logger.warning(f"Model API connection error (attempt {attempt + 1}/{self._max_retries + 1}): {e}")
                last_error = ModelBackendError(f"Model API connection error: {e}")
                last_error.__cause__ = e

            if attempt < self._max_retries:
                await asyncio.sleep(2 ** attempt)

        raise last_error or ModelBackendError("Model API request failed")

    async def chat_stream(self, request: Dict[str, Any]) -> AsyncIterator[str]:
        """Yield content deltas from an SSE response until the [DONE] sentinel"""
        if not self.api_key:
            raise ModelBackendError("No API key configured for the model backend")

        payload = self._payload(request, stream=True)
        url = f"{self.base_url}/chat/completions"

        try:
            async with self._get_session().post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=None, sock_read=self._request_timeout),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise ModelBackendError(
                        f"Model API error {response.status}: {error_text[:200]}", status=response.status
                    )

                async for raw_line in response.content:
                    line = raw_line.decode("utf-8").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == STREAM_SENTINEL:
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping malformed stream chunk: {data[:80]}")
                        continue
                    delta = (chunk.get("choices") or [{}])[0].get("delta", {}).get("content")
                    if delta:
                        yield delta
        except asyncio.TimeoutError as e:
            raise ModelBackendError("Model API stream timed out") from e
        except aiohttp.ClientError as e:
            raise ModelBackendError(f"Model API connection error: {e}") from e

    async def health_check(self) -> bool:
        if not self.api_key:
            return False
        try:
            async with self._get_session().get(
                f"{self.base_url}/models",
                timeout=aiohttp.ClientTimeout(total=5),
            ) as response:
                return response.status == 200
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.warning(f"Model backend health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
