"""
Provider wire formats.

Every backend is a `ProviderAdapter` that knows its endpoint, its auth
headers, how to shape a request payload and how to read a response.
OpenAI-compatible services (OpenRouter, Requesty, OpenAI and custom
endpoints) share the chat-completions shape and are called through the
`openai` SDK; Gemini's generateContent API is called directly with
`httpx`.  Retries are disabled everywhere: any failure is terminal for
the request.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx
import openai

from .config import Provider, ProviderConfig
from .errors import HTTPStatusError, ProviderAPIError, ResponseParseError, TransportError

logger = logging.getLogger(__name__)

Message = Dict[str, str]

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TOP_K = 40
GEMINI_TOP_P = 0.95


@dataclass
class LLMResponse:
    """Provider-neutral view of a completion."""

    content: str
    tokens_used: int = 0
    model: str = ""
    provider: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def raise_for_api_error(data: Any) -> None:
    """Raise `ProviderAPIError` if `data` carries an `error` object."""
    if not isinstance(data, Mapping) or "error" not in data or not data["error"]:
        return
    error = data["error"]
    if isinstance(error, Mapping):
        message = error.get("message") or json.dumps(dict(error))
        raise ProviderAPIError(str(message), code=error.get("code") or error.get("status"))
    raise ProviderAPIError(str(error))


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        # The openai SDK hands over the inner error object
        if isinstance(body.get("message"), str):
            return body["message"]
    return fallback


class ProviderAdapter(ABC):
    name: str

    @abstractmethod
    def endpoint(self, config: ProviderConfig) -> str:
        """Full URL requests are POSTed to."""

    @abstractmethod
    def auth_headers(self, config: ProviderConfig) -> Dict[str, str]:
        ...

    @abstractmethod
    def build_payload(
        self, messages: List[Message], config: ProviderConfig, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def parse_response(self, data: Any) -> LLMResponse:
        ...

    @abstractmethod
    def send(
        self, payload: Dict[str, Any], config: ProviderConfig, http_client: Optional[httpx.Client] = None
    ) -> Any:
        """POST `payload` once and return the decoded JSON body."""


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions providers.

    `base_url` is the API root; the SDK appends `/chat/completions`.
    """

    def __init__(self, name: str, base_url: Optional[str], extra_headers: Optional[Dict[str, str]] = None) -> None:
        self.name = name
        self._base_url = base_url
        self.extra_headers = dict(extra_headers or {})

    def base_url(self, config: ProviderConfig) -> str:
        if self._base_url:
            return self._base_url
        if not config.custom_endpoint:
            raise ValueError(f"Provider '{self.name}' requires custom_endpoint to be set")
        url = config.custom_endpoint.rstrip("/")
        if url.endswith("/chat/completions"):
            url = url[: -len("/chat/completions")]
        return url

    def endpoint(self, config: ProviderConfig) -> str:
        return self.base_url(config).rstrip("/") + "/chat/completions"

    def auth_headers(self, config: ProviderConfig) -> Dict[str, str]:
        return {"Authorization": f"Bearer {config.api_key}", **self.extra_headers}

    def build_payload(
        self, messages: List[Message], config: ProviderConfig, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        return {
            "model": config.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }

    def parse_response(self, data: Any) -> LLMResponse:
        raise_for_api_error(data)
        try:
            content = data["choices"][0]["message"]["content"] or ""
            usage = data.get("usage") or {}
            return LLMResponse(
                content=content,
                tokens_used=int(usage.get("total_tokens") or 0),
                model=str(data.get("model") or ""),
                provider=self.name,
                raw=data,
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            raise ResponseParseError(f"Unexpected {self.name} response shape: {exc!r}") from exc

    def send(
        self, payload: Dict[str, Any], config: ProviderConfig, http_client: Optional[httpx.Client] = None
    ) -> Any:
        logger.debug("POST %s via openai SDK", self.endpoint(config))
        client = openai.OpenAI(
            api_key=config.api_key,
            base_url=self.base_url(config),
            timeout=config.timeout_seconds,
            max_retries=0,
            default_headers=self.extra_headers or None,
            http_client=http_client,
        )
        try:
            raw = client.chat.completions.with_raw_response.create(**payload)
            text = raw.text
        except openai.APIStatusError as exc:
            raise HTTPStatusError(exc.status_code, _error_message(exc.body, exc.message)) from exc
        except openai.APIConnectionError as exc:
            raise TransportError(f"{self.name} request failed: {exc}") from exc
        finally:
            if http_client is None:
                client.close()
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ResponseParseError(f"{self.name} returned invalid JSON: {exc}") from exc


class GeminiAdapter(ProviderAdapter):
    name = "gemini"

    def endpoint(self, config: ProviderConfig) -> str:
        if config.custom_endpoint:
            return config.custom_endpoint
        return f"{GEMINI_BASE_URL}/models/{config.model}:generateContent"

    def auth_headers(self, config: ProviderConfig) -> Dict[str, str]:
        return {"x-goog-api-key": config.api_key or "", "Content-Type": "application/json"}

    def build_payload(
        self, messages: List[Message], config: ProviderConfig, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system" and m["content"])
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in messages
            if m["role"] != "system"
        ]
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "topK": GEMINI_TOP_K,
                "topP": GEMINI_TOP_P,
                "maxOutputTokens": max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    def parse_response(self, data: Any) -> LLMResponse:
        raise_for_api_error(data)
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
            usage = data.get("usageMetadata") or {}
            return LLMResponse(
                content=text,
                tokens_used=int(usage.get("totalTokenCount") or 0),
                model=str(data.get("modelVersion") or ""),
                provider=self.name,
                raw=data,
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            raise ResponseParseError(f"Unexpected gemini response shape: {exc!r}") from exc

    def send(
        self, payload: Dict[str, Any], config: ProviderConfig, http_client: Optional[httpx.Client] = None
    ) -> Any:
        logger.debug("POST %s", self.endpoint(config))
        client = http_client or httpx.Client()
        try:
            response = client.post(
                self.endpoint(config),
                json=payload,
                headers=self.auth_headers(config),
                timeout=config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"gemini request failed: {exc}") from exc
        finally:
            if http_client is None:
                client.close()
        try:
            body = response.json()
        except ValueError as exc:
            if not response.is_success:
                raise HTTPStatusError(response.status_code, response.text[:200]) from exc
            raise ResponseParseError(f"gemini returned invalid JSON: {exc}") from exc
        if not response.is_success:
            raise HTTPStatusError(response.status_code, _error_message(body, response.reason_phrase))
        return body


PROVIDERS: Dict[Provider, ProviderAdapter] = {
    Provider.OPENROUTER: OpenAICompatibleAdapter(
        "openrouter",
        "https://openrouter.ai/api/v1",
        extra_headers={"HTTP-Referer": "https://github.com/clion-cli/clion", "X-Title": "clion"},
    ),
    Provider.REQUESTY: OpenAICompatibleAdapter("requesty", "https://router.requesty.ai/v1"),
    Provider.OPENAI: OpenAICompatibleAdapter("openai", "https://api.openai.com/v1"),
    Provider.CUSTOM: OpenAICompatibleAdapter("custom", None),
    Provider.GEMINI: GeminiAdapter(),
}


def get_adapter(provider: Provider) -> ProviderAdapter:
    return PROVIDERS[Provider(provider)]
