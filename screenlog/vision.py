"""
Vision model clients for screen analysis.

This module gives the capture loop and the connectivity self-test one code
path to every supported backend. Each backend is a ModelClient subclass that
only knows its own request and response shape; retries, timeouts, error
typing and exchange logging live in the base class.

Backends:
- OpenAIClient: OpenAI-compatible /chat/completions with image_url parts
- ClaudeClient: Anthropic-compatible /v1/messages with base64 image blocks
- CustomClient: generic JSON endpoint taking {model, prompt, image}
- OllamaClient: local Ollama /api/chat, no key
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from .config import ModelConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 8.0

CHAT_SYSTEM_PROMPT = (
    "You are a screen activity assistant. Answer using only the activity "
    "records you are given. If they do not contain the answer, say so."
)

ExchangeLogger = Callable[[str, str], Any]


class ModelError(RuntimeError):
    """Base class for model call failures.

    Attributes:
        status_code: HTTP status when the server answered, else None
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelTransientError(ModelError):
    """Timeout, connection failure, rate limit or 5xx: worth retrying."""


class ModelPermanentError(ModelError):
    """Authentication, bad request or unusable reply: retrying will not help."""


@dataclass(frozen=True)
class ConnectionReport:
    """Result of a successful connectivity self-test."""
    provider: str
    model: str
    latency_ms: int
    reply: str


class ModelClient:
    """Capability interface shared by all backends.

    Subclasses implement ``_url``, ``_headers``, ``_build_payload`` and
    ``_extract_text``; everything else is common.

    Attributes:
        endpoint: Base URL of the backend.
        model: Model name sent with every request.
        timeout: Per-request timeout in seconds.
        max_attempts: Attempts for transient failures, including the first.
    """

    provider_name = "base"
    requires_key = False

    def __init__(
        self,
        endpoint: str,
        model: str,
        api_key: str = "",
        timeout: float = 60,
        max_attempts: int = 3,
        exchange_log: Optional[ExchangeLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = (endpoint or "").strip().rstrip("/")
        self.model = model
        self.api_key = api_key or ""
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.exchange_log = exchange_log
        self._sleep = sleep

    @property
    def identity(self) -> str:
        """Provider identity stored with each record, e.g. ``api:openai/gpt-4o-mini``."""
        return f"{self.provider_name}/{self.model}"

    # ============ Public operations ============

    def analyze(self, image_b64: str, prompt: str) -> str:
        """Send one screenshot and the analysis prompt, return the raw reply text.

        Raises:
            ModelTransientError: If every attempt failed transiently.
            ModelPermanentError: On the first permanent failure.
        """
        return self._request(self._build_payload(prompt, image_b64), "analyze", prompt)

    def chat(self, context: str, question: str) -> str:
        """Text-only request: answer ``question`` given ``context``."""
        prompt = f"{context.strip()}\n\n{question.strip()}" if context else question.strip()
        return self._request(self._build_payload(prompt, None, system=CHAT_SYSTEM_PROMPT), "chat", prompt)

    def test_connection(self) -> ConnectionReport:
        """Round-trip a tiny chat request through the normal code path.

        Raises:
            ModelError: Exactly as a capture tick would see it.
        """
        started = time.monotonic()
        reply = self.chat("Connectivity check.", "Reply with the single word OK.")
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Connectivity test to {self.identity} succeeded in {latency_ms}ms")
        return ConnectionReport(provider=self.identity, model=self.model,
                                latency_ms=latency_ms, reply=reply.strip())

    # ============ Backend hooks ============

    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def _build_payload(self, prompt: str, image_b64: Optional[str], system: Optional[str] = None) -> dict:
        raise NotImplementedError

    def _extract_text(self, data: Any) -> str:
        raise NotImplementedError

    # ============ Request machinery ============

    def _backoff(self, attempt: int) -> float:
        delay = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay / 4)

    def _request(self, payload: dict, purpose: str, prompt: str) -> str:
        if self.requires_key and not self.api_key.strip():
            raise ModelPermanentError(f"API key is required for {self.provider_name}")
        if not self.endpoint:
            raise ModelPermanentError("Model endpoint is not configured")

        last_error: Optional[ModelTransientError] = None
        for attempt in range(1, self.max_attempts + 1):
            start_time = time.time()
            try:
                text = self._post_once(payload)
            except ModelTransientError as e:
                last_error = e
                logger.warning(f"{self.identity} {purpose} attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    self._sleep(self._backoff(attempt))
                continue
            except ModelPermanentError as e:
                logger.error(f"{self.identity} {purpose} failed permanently: {e}")
                self._log_exchange(purpose, prompt, attempt, error=e)
                raise

            inference_time = time.time() - start_time
            logger.info(f"{self.identity} {purpose} completed in {inference_time:.2f}s (attempt {attempt})")
            self._log_exchange(purpose, prompt, attempt, reply=text)
            return text

        self._log_exchange(purpose, prompt, self.max_attempts, error=last_error)
        raise last_error

    def _post_once(self, payload: dict) -> str:
        url = self._url()
        try:
            response = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ModelTransientError(f"Request to {url} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ModelTransientError(f"Cannot connect to {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ModelPermanentError(f"Request to {url} failed: {e}") from e

        status = response.status_code
        if status >= 400:
            body = (response.text or "")[:500]
            message = f"HTTP {status} from {url}: {body}"
            if status >= 500 or status in (408, 429):
                raise ModelTransientError(message, status_code=status)
            raise ModelPermanentError(message, status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise ModelPermanentError(f"Response from {url} is not JSON: {e}", status_code=status) from e

        try:
            text = self._extract_text(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ModelPermanentError(f"Unexpected response shape from {url}: {e}", status_code=status) from e

        if not text or not text.strip():
            raise ModelPermanentError(f"Empty reply from {url}", status_code=status)
        return text

    def _log_exchange(self, purpose: str, prompt: str, attempt: int,
                      reply: Optional[str] = None, error: Optional[Exception] = None) -> None:
        if self.exchange_log is None:
            return
        lines = [
            f"purpose: {purpose}",
            f"provider: {self.identity}",
            f"url: {self._url()}",
            f"attempts: {attempt}",
            "",
            "prompt:",
            prompt,
            "",
        ]
        if error is not None:
            lines += [f"error ({type(error).__name__}):", str(error)]
        else:
            lines += ["reply:", reply or ""]
        try:
            self.exchange_log(f"model-{purpose}", "\n".join(lines))
        except Exception as e:
            logger.warning(f"Failed to write model exchange log: {e}")


class OpenAIClient(ModelClient):
    """OpenAI-compatible chat completions with inline image_url parts."""

    provider_name = "api:openai"
    requires_key = True

    def _url(self) -> str:
        if self.endpoint.endswith("/chat/completions"):
            return self.endpoint
        return f"{self.endpoint}/chat/completions"

    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _build_payload(self, prompt, image_b64, system=None):
        if image_b64:
            content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
            ]
        else:
            content = prompt
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})
        return {"model": self.model, "messages": messages,
                "max_tokens": DEFAULT_MAX_TOKENS, "temperature": 0.2}

    def _extract_text(self, data):
        content = data["choices"][0]["message"]["content"]
        if isinstance(content, list):
            return "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return content or ""


class ClaudeClient(ModelClient):
    """Anthropic-compatible messages API with base64 image blocks."""

    provider_name = "api:claude"
    requires_key = True
    API_VERSION = "2023-06-01"

    def _url(self) -> str:
        if self.endpoint.endswith("/messages"):
            return self.endpoint
        if self.endpoint.endswith("/v1"):
            return f"{self.endpoint}/messages"
        return f"{self.endpoint}/v1/messages"

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
        }

    def _build_payload(self, prompt, image_b64, system=None):
        content = []
        if image_b64:
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": "image/jpeg", "data": image_b64},
            })
        content.append({"type": "text", "text": prompt})
        payload = {
            "model": self.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            payload["system"] = system
        return payload

    def _extract_text(self, data):
        return "".join(block.get("text", "") for block in data["content"]
                       if isinstance(block, dict) and block.get("type") == "text")


class CustomClient(ModelClient):
    """Generic endpoint: POST {model, prompt, image} and read back a text field.

    The reply may be a JSON string, or an object carrying the text under
    one of ``response``, ``content``, ``text``, ``output`` or ``result``;
    OpenAI- and Ollama-shaped replies are accepted as well.
    """

    provider_name = "api:custom"
    TEXT_KEYS = ("response", "content", "text", "output", "result")

    def _url(self) -> str:
        return self.endpoint

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, prompt, image_b64, system=None):
        payload = {"model": self.model, "prompt": f"{system}\n\n{prompt}" if system else prompt}
        if image_b64:
            payload["image"] = image_b64
        return payload

    def _extract_text(self, data):
        if isinstance(data, str):
            return data
        for key in self.TEXT_KEYS:
            value = data.get(key)
            if isinstance(value, str):
                return value
        if isinstance(data.get("message"), dict):
            return data["message"].get("content", "")
        if data.get("choices"):
            return data["choices"][0]["message"]["content"]
        raise KeyError(f"none of {', '.join(self.TEXT_KEYS)} in reply")


class OllamaClient(ModelClient):
    """Local Ollama server via its HTTP chat API (no key)."""

    provider_name = "ollama"

    def _url(self) -> str:
        return f"{self.endpoint}/api/chat"

    def _build_payload(self, prompt, image_b64, system=None):
        message = {"role": "user", "content": prompt}
        if image_b64:
            message["images"] = [image_b64]
        messages = [{"role": "system", "content": system}] if system else []
        messages.append(message)
        return {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "keep_alive": "1h",  # keep the model loaded between ticks
        }

    def _extract_text(self, data):
        return data["message"]["content"]


API_CLIENTS = {
    "openai": OpenAIClient,
    "claude": ClaudeClient,
    "custom": CustomClient,
}


def create_client(
    model_config: ModelConfig,
    exchange_log: Optional[ExchangeLogger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ModelClient:
    """Build the client selected by ``model_config``.

    Args:
        model_config: Provider selection and connection parameters.
        exchange_log: Called as (prefix, content) per model call when set.
        sleep: Backoff sleep function; replaceable in tests.

    Raises:
        ValueError: If the provider or API type is unknown.
    """
    common = dict(
        timeout=model_config.timeout_seconds,
        max_attempts=model_config.max_attempts,
        exchange_log=exchange_log,
        sleep=sleep,
    )
    if model_config.provider == "ollama":
        return OllamaClient(model_config.ollama.endpoint, model_config.ollama.model, **common)
    if model_config.provider == "api":
        client_cls = API_CLIENTS.get(model_config.api.type)
        if client_cls is None:
            raise ValueError(f"Unsupported API type: {model_config.api.type}")
        return client_cls(model_config.api.endpoint, model_config.api.model,
                          api_key=model_config.api.api_key, **common)
    raise ValueError(f"Unsupported provider: {model_config.provider}")
