from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..config import Settings


ANTHROPIC_VERSION = "2023-06-01"


class LLMError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class ChatClient(Protocol):
    def chat(self, messages: list[ChatMessage], *, max_tokens: int | None = None) -> str: ...


def _json_object(r: httpx.Response, provider: str) -> dict[str, Any]:
    try:
        data = r.json()
    except ValueError as e:
        raise LLMError(f"{provider} returned a non-JSON body: {r.text[:200]!r}") from e
    if not isinstance(data, dict):
        raise LLMError(f"Unexpected {provider} response: {data!r}")
    return data


class AnthropicChatClient:
    """Client for the Anthropic Messages API (``POST /v1/messages``)."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 1000,
        timeout_s: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = int(max_tokens)
        self.timeout_s = float(timeout_s)
        self._transport = transport

    def chat(self, messages: list[ChatMessage], *, max_tokens: int | None = None) -> str:
        url = f"{self.base_url}/v1/messages"
        # System prompts go in a top-level field, not in the message list.
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": int(max_tokens or self.max_tokens),
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
        }
        if system:
            payload["system"] = system

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                r = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise LLMError(f"Failed to reach Anthropic API at {self.base_url} ({e})") from e

        if r.status_code != 200:
            raise LLMError(f"Anthropic error {r.status_code}: {r.text}")

        data = _json_object(r, "Anthropic")
        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        if not text:
            raise LLMError(f"Unexpected Anthropic response: {data}")
        return text


class OllamaChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_s: float = 120.0,
        options: dict[str, Any] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)
        self.options = dict(options or {})
        self._transport = transport

    def chat(self, messages: list[ChatMessage], *, max_tokens: int | None = None) -> str:
        url = f"{self.base_url}/api/chat"
        payload: dict[str, Any] = {
            "model": self.model,
            "stream": False,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        options = dict(self.options)
        if max_tokens:
            options["num_predict"] = int(max_tokens)
        if options:
            payload["options"] = options

        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                r = client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise LLMError(
                f"Failed to connect to Ollama at {self.base_url}. Is it running? ({e})"
            ) from e

        if r.status_code != 200:
            raise LLMError(f"Ollama error {r.status_code}: {r.text}")

        data = _json_object(r, "Ollama")
        msg = data.get("message") or {}
        content = msg.get("content")
        if not isinstance(content, str):
            raise LLMError(f"Unexpected Ollama response: {data}")
        return content


def make_client(
    settings: Settings,
    *,
    provider: str | None = None,
    model: str | None = None,
    base_url: str | None = None,
) -> ChatClient:
    provider = (provider or settings.llm_provider).lower()
    if provider == "anthropic":
        if not settings.anthropic_api_key:
            raise LLMError("ANTHROPIC_API_KEY is not set.")
        return AnthropicChatClient(
            api_key=settings.anthropic_api_key,
            model=model or settings.anthropic_model,
            base_url=base_url or settings.anthropic_base_url,
            timeout_s=settings.llm_timeout_s,
        )
    if provider == "ollama":
        return OllamaChatClient(
            base_url=base_url or settings.ollama_base_url,
            model=model or settings.ollama_model,
            timeout_s=settings.llm_timeout_s,
            options={"temperature": 0.0},
        )
    raise LLMError(f"Unknown LLM provider: {provider!r} (expected 'anthropic' or 'ollama')")
