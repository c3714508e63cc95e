"""
explainer.py — Single-file explanation pipeline.

cache lookup -> prompt -> provider call (retried with exponential
backoff) -> token accounting -> cache store.

Token usage is accumulated into a TokenUsage that the caller owns and
passes in, so separate runs never share counters.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
import logging
import math
from typing import Awaitable, Callable, Optional, TypeVar

from analyzer import FileDescriptor
from cache import FingerprintCache
from config import ExplainConfig
from prompts import PromptManager
from providers import Provider, ProviderResponse, Usage

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    cached_files: int = 0
    processed_files: int = 0

    def record_cache_hit(self) -> None:
        self.cached_files += 1

    def record_request(self, input_tokens: int) -> None:
        self.total_input_tokens += input_tokens
        self.processed_files += 1

    def record_response(self, input_tokens: int, output_tokens: int) -> None:
        self.total_output_tokens += output_tokens
        self.total_tokens += input_tokens + output_tokens

    def report(self) -> str:
        return (
            f"Files processed: {self.processed_files} | Files from cache: {self.cached_files} | "
            f"Tokens in: {self.total_input_tokens:,} | Tokens out: {self.total_output_tokens:,} | "
            f"Total: {self.total_tokens:,}"
        )


def estimate_tokens(
    text: Optional[str],
    usage: Optional[Usage] = None,
    tokenizer: Optional[Callable[[str], Optional[int]]] = None,
) -> int:
    """
    Token count for `text`, preferring what the provider reported.

    Order: prompt+completion counts, then a reported total, then an exact
    tokenizer, then ceil(len / 4).
    """
    if usage is not None:
        if usage.prompt_tokens is not None and usage.completion_tokens is not None:
            return usage.prompt_tokens + usage.completion_tokens
        if usage.total_tokens is not None:
            return usage.total_tokens
    if not text:
        return 0
    if tokenizer is not None:
        exact = tokenizer(text)
        if exact is not None:
            return exact
    return math.ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay_ms: float = 1000,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "",
) -> T:
    """
    Call `fn` once, then retry up to `attempts` more times on failure.

    The wait starts at `delay_ms` and doubles after every failed attempt.
    The error from the final attempt is re-raised.
    """
    attempts = max(0, attempts)
    delay = delay_ms
    for attempt in range(attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt == attempts:
                raise
            logger.warning(
                "%sAttempt %d failed (%s). Retrying in %dms...",
                f"[{label}] " if label else "", attempt + 1, e, delay,
            )
            await sleep(delay / 1000)
            delay *= 2
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Explainer
# ---------------------------------------------------------------------------

@dataclass
class ExplainedFile:
    descriptor: FileDescriptor
    explanation: str
    cached: bool

    @property
    def path(self) -> str:
        return self.descriptor.path

    @property
    def relative_path(self) -> str:
        return self.descriptor.relative_path

    def to_dict(self) -> dict:
        d = self.descriptor
        return {
            "path": d.path,
            "relative_path": d.relative_path,
            "language": d.language,
            "hash": d.hash,
            "size": d.size,
            "mtime_ms": d.mtime_ms,
            "explanation": self.explanation,
            "cached": self.cached,
        }


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class Explainer:
    def __init__(
        self,
        provider: Provider,
        *,
        cache: Optional[FingerprintCache] = None,
        prompts: Optional[PromptManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.cache = cache
        self.prompts = prompts or PromptManager()
        self.sleep = sleep

    def _cache_enabled(self, descriptor: FileDescriptor, config: ExplainConfig) -> bool:
        return bool(config.cache and self.cache is not None and descriptor.path)

    async def _invoke(self, prompt: str, config: ExplainConfig, label: str) -> ProviderResponse:
        messages = [
            {"role": "system", "content": self.prompts.system_prompt(config)},
            {"role": "user", "content": prompt},
        ]
        return await retry_with_backoff(
            lambda: self.provider.invoke(messages),
            attempts=config.retry_attempts,
            delay_ms=config.retry_delay_ms,
            sleep=self.sleep,
            label=label,
        )

    async def explain(
        self,
        descriptor: FileDescriptor,
        config: ExplainConfig,
        usage: TokenUsage,
    ) -> ExplainedFile:
        label = descriptor.relative_path or descriptor.path
        use_cache = self._cache_enabled(descriptor, config)
        # synthetic entries have no file on disk; fingerprint their text instead
        fingerprint_content = descriptor.content if descriptor.synthetic else None

        if use_cache:
            cached = await asyncio.to_thread(
                self.cache.lookup, descriptor.path, config, content=fingerprint_content,
            )
            if cached is not None:
                logger.debug("Cache hit for %s (%d chars)", label, len(cached))
                usage.record_cache_hit()
                return ExplainedFile(descriptor, cached, cached=True)
            logger.debug("Cache miss for %s", label)

        prompt = self.prompts.build_prompt(descriptor, config)
        input_tokens = estimate_tokens(prompt, tokenizer=self.provider.count_tokens)
        usage.record_request(input_tokens)
        logger.debug("Prompt for %s: %d chars, ~%d tokens", label, len(prompt), input_tokens)

        try:
            response = await self._invoke(prompt, config, label)
        except Exception as e:
            message = _error_message(e)
            if descriptor.synthetic:
                logger.error("Error generating %s analysis: %s", config.mode, message)
                text = f"Error generating {config.mode} analysis: {message}"
            else:
                logger.error("Error explaining file %s: %s", descriptor.path, message)
                text = f"Error generating explanation: {message}"
            return ExplainedFile(descriptor, text, cached=False)

        output_tokens = estimate_tokens(response.content, response.usage, self.provider.count_tokens)
        usage.record_response(input_tokens, output_tokens)
        logger.debug("Response for %s: %d chars, ~%d tokens", label, len(response.content), output_tokens)

        if use_cache:
            await asyncio.to_thread(
                self.cache.store, descriptor.path, config, response.content, content=fingerprint_content,
            )
        return ExplainedFile(descriptor, response.content, cached=False)
