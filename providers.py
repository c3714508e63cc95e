"""
providers.py — Adapters over the remote (or local) model endpoints.

Every adapter takes a short list of role-tagged messages (one system
instruction, one user prompt) and returns the text plus whatever usage
counters the endpoint reported. Adapters raise on transport or HTTP
failures so the caller's retry loop can react; an empty completion is a
valid answer, not an error.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Any, Optional

import anthropic
import httpx
import openai
import tiktoken

from config import (
    ExplainConfig, PROVIDER_ANTHROPIC, PROVIDER_GEMINI, PROVIDER_OLLAMA, PROVIDER_OPENAI,
)

logger = logging.getLogger(__name__)


GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
OLLAMA_BASE_URL = "http://localhost:11434"
HTTP_TIMEOUT_SECS = 120.0


class ProviderError(Exception):
    pass


@dataclass
class Usage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class ProviderResponse:
    content: str
    usage: Optional[Usage] = None


def _split_messages(messages: list[dict]) -> tuple[Optional[str], list[dict]]:
    system = None
    rest: list[dict] = []
    for m in messages:
        if m["role"] == "system":
            system = m["content"] if system is None else f"{system}\n\n{m['content']}"
        else:
            rest.append(m)
    return system, rest


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class Provider:
    name = "base"

    def __init__(self, *, model: str, max_tokens: int):
        self.model = model
        self.max_tokens = max_tokens

    async def invoke(self, messages: list[dict]) -> ProviderResponse:
        raise NotImplementedError

    def count_tokens(self, text: str) -> Optional[int]:
        """Exact token count when the provider has a local tokenizer, else None."""
        return None

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicProvider(Provider):
    name = PROVIDER_ANTHROPIC

    def __init__(self, *, api_key: str, model: str, max_tokens: int, client: Optional[Any] = None):
        super().__init__(model=model, max_tokens=max_tokens)
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def invoke(self, messages: list[dict]) -> ProviderResponse:
        system, rest = _split_messages(messages)
        request = dict(model=self.model, max_tokens=self.max_tokens, messages=rest)
        if system is not None:
            request["system"] = system

        response = await self.client.messages.create(**request)
        text = "".join(
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        usage = getattr(response, "usage", None)
        if usage is None:
            return ProviderResponse(content=text)
        return ProviderResponse(
            content=text,
            usage=Usage(
                prompt_tokens=usage.input_tokens,
                completion_tokens=usage.output_tokens,
                total_tokens=usage.input_tokens + usage.output_tokens,
            ),
        )

    async def aclose(self) -> None:
        await self.client.close()


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible endpoints via base_url)
# ---------------------------------------------------------------------------

class OpenAIProvider(Provider):
    name = PROVIDER_OPENAI

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int,
        base_url: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        super().__init__(model=model, max_tokens=max_tokens)
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._encoder = None
        self._encoder_loaded = False

    def _load_encoder(self):
        self._encoder_loaded = True
        try:
            self._encoder = tiktoken.encoding_for_model(self.model)
        except KeyError:
            try:
                self._encoder = tiktoken.get_encoding("cl100k_base")
            except (OSError, ValueError) as e:
                logger.warning("tiktoken encoding unavailable, using approximation: %s", e)
        except (OSError, ValueError) as e:
            logger.warning("tiktoken encoding unavailable, using approximation: %s", e)

    def count_tokens(self, text: str) -> Optional[int]:
        if not self._encoder_loaded:
            self._load_encoder()
        if self._encoder is None:
            return None
        return len(self._encoder.encode(text))

    async def invoke(self, messages: list[dict]) -> ProviderResponse:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=messages,
        )
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is None:
            return ProviderResponse(content=text)
        return ProviderResponse(
            content=text,
            usage=Usage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            ),
        )

    async def aclose(self) -> None:
        await self.client.close()


# ---------------------------------------------------------------------------
# Gemini (Generative Language REST API)
# ---------------------------------------------------------------------------

class GeminiProvider(Provider):
    name = PROVIDER_GEMINI

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model=model, max_tokens=max_tokens)
        self.api_key = api_key
        self.base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECS)

    async def invoke(self, messages: list[dict]) -> ProviderResponse:
        system, rest = _split_messages(messages)
        payload: dict = {
            "contents": [
                {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
                for m in rest
            ],
            "generationConfig": {"maxOutputTokens": self.max_tokens},
        }
        if system is not None:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        response = await self.client.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            json=payload,
            headers={"x-goog-api-key": self.api_key},
        )
        response.raise_for_status()
        data = response.json()

        text = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts)

        meta = data.get("usageMetadata")
        if not meta:
            return ProviderResponse(content=text)
        return ProviderResponse(
            content=text,
            usage=Usage(
                prompt_tokens=meta.get("promptTokenCount"),
                completion_tokens=meta.get("candidatesTokenCount"),
                total_tokens=meta.get("totalTokenCount"),
            ),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------

class OllamaProvider(Provider):
    name = PROVIDER_OLLAMA

    def __init__(
        self,
        *,
        model: str,
        max_tokens: int,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model=model, max_tokens=max_tokens)
        self.base_url = (base_url or OLLAMA_BASE_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECS)

    async def invoke(self, messages: list[dict]) -> ProviderResponse:
        response = await self.client.post(
            f"{self.base_url}/api/chat",
            json={
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"num_predict": self.max_tokens},
            },
        )
        response.raise_for_status()
        data = response.json()

        text = (data.get("message") or {}).get("content", "") or ""
        prompt_tokens = data.get("prompt_eval_count")
        completion_tokens = data.get("eval_count")
        if prompt_tokens is None and completion_tokens is None:
            return ProviderResponse(content=text)
        total = None
        if prompt_tokens is not None and completion_tokens is not None:
            total = prompt_tokens + completion_tokens
        return ProviderResponse(
            content=text,
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=total),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

SUPPORTED_PROVIDERS = (PROVIDER_GEMINI, PROVIDER_OPENAI, PROVIDER_ANTHROPIC, PROVIDER_OLLAMA)


def check_provider(name: str) -> None:
    if name not in SUPPORTED_PROVIDERS:
        raise ProviderError(
            f"Unsupported AI provider: {name}. "
            f"Supported providers are: {', '.join(SUPPORTED_PROVIDERS)}"
        )


def create_provider(config: ExplainConfig, *, client: Optional[Any] = None) -> Provider:
    """
    Build the adapter for `config.provider`.

    Fails fast, before any file is processed, on an unknown provider or a
    missing credential for a remote provider.
    """
    check_provider(config.provider)
    if config.requires_api_key and not config.api_key:
        raise ProviderError(
            f"API key required for {config.provider}. "
            "Please provide an API key via --api-key or the config file."
        )

    if config.provider == PROVIDER_GEMINI:
        return GeminiProvider(
            api_key=config.api_key, model=config.model, max_tokens=config.max_tokens,
            base_url=config.base_url, client=client,
        )
    if config.provider == PROVIDER_OPENAI:
        return OpenAIProvider(
            api_key=config.api_key, model=config.model, max_tokens=config.max_tokens,
            base_url=config.base_url, client=client,
        )
    if config.provider == PROVIDER_ANTHROPIC:
        return AnthropicProvider(
            api_key=config.api_key, model=config.model, max_tokens=config.max_tokens, client=client,
        )
    return OllamaProvider(
        model=config.model, max_tokens=config.max_tokens, base_url=config.base_url, client=client,
    )
