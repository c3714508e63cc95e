import asyncio
import logging
from pathlib import Path

import pytest

from analyzer import FileDescriptor, analyze_file
from cache import FingerprintCache
from config import ExplainConfig
from explainer import Explainer, TokenUsage, estimate_tokens, retry_with_backoff
from prompts import MARKDOWN_SUFFIX, PromptManager
from providers import Provider, ProviderResponse, Usage


class _ScriptedProvider(Provider):
    """Plays back a script of responses / exceptions; the last entry repeats."""

    def __init__(self, script):
        super().__init__(model="fake-model", max_tokens=100)
        self.script = list(script)
        self.calls: list[list[dict]] = []

    async def invoke(self, messages):
        self.calls.append(messages)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return step


def _descriptor(tmp_path: Path, name: str = "a.py", text: str = "x = 1\n") -> FileDescriptor:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return analyze_file(p, base=tmp_path, max_size_bytes=1_000_000)


def _config(**overrides) -> ExplainConfig:
    values = dict(provider="ollama", retry_delay_ms=1)
    values.update(overrides)
    return ExplainConfig(**values)


def _explainer(provider, tmp_path: Path, *, cache: bool = False, sleeps: list | None = None) -> Explainer:
    async def _sleep(secs: float) -> None:
        if sleeps is not None:
            sleeps.append(secs)

    return Explainer(
        provider,
        cache=FingerprintCache(tmp_path / "cache") if cache else None,
        prompts=PromptManager(tmp_path / "prompts"),
        sleep=_sleep,
    )


# ---------------------------------------------------------------------------
# retry_with_backoff
# ---------------------------------------------------------------------------

def test_retry_returns_after_transient_failures():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    async def fake_sleep(secs):
        sleeps.append(secs)

    result = asyncio.run(retry_with_backoff(flaky, attempts=3, delay_ms=1000, sleep=fake_sleep))

    assert result == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_exhaustion_reraises_last_error(caplog):
    calls = []

    async def always_fails():
        calls.append(1)
        raise TimeoutError(f"timeout {len(calls)}")

    async def fake_sleep(secs):
        pass

    with caplog.at_level(logging.WARNING, logger="explainer"):
        with pytest.raises(TimeoutError, match="timeout 3"):
            asyncio.run(retry_with_backoff(always_fails, attempts=2, delay_ms=10, sleep=fake_sleep))

    assert len(calls) == 3
    assert caplog.text.count("Retrying in") == 2


def test_retry_with_zero_attempts_calls_once():
    calls = []

    async def always_fails():
        calls.append(1)
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        asyncio.run(retry_with_backoff(always_fails, attempts=0, delay_ms=1))
    assert len(calls) == 1


# ---------------------------------------------------------------------------
# estimate_tokens
# ---------------------------------------------------------------------------

def test_estimate_prefers_prompt_plus_completion():
    assert estimate_tokens("ignored", Usage(prompt_tokens=10, completion_tokens=5, total_tokens=99)) == 15


def test_estimate_falls_back_to_reported_total():
    assert estimate_tokens("ignored", Usage(total_tokens=42)) == 42
    assert estimate_tokens("ignored", Usage(prompt_tokens=10, total_tokens=42)) == 42


def test_estimate_uses_tokenizer_then_character_heuristic():
    assert estimate_tokens("abcdefgh", tokenizer=lambda text: 7) == 7
    assert estimate_tokens("abcde", tokenizer=lambda text: None) == 2
    assert estimate_tokens("abcde", Usage(prompt_tokens=3)) == 2
    assert estimate_tokens("") == 0


# ---------------------------------------------------------------------------
# Explainer
# ---------------------------------------------------------------------------

def test_explain_sends_system_and_user_messages(tmp_path: Path):
    provider = _ScriptedProvider([ProviderResponse(content="it assigns x")])
    explainer = _explainer(provider, tmp_path)
    descriptor = _descriptor(tmp_path)

    result = asyncio.run(explainer.explain(descriptor, _config(), TokenUsage()))

    assert result.explanation == "it assigns x"
    assert result.cached is False
    [messages] = provider.calls
    assert [m["role"] for m in messages] == ["system", "user"]
    assert "x = 1" in messages[1]["content"]
    assert messages[1]["content"].endswith(MARKDOWN_SUFFIX)


def test_explain_retries_until_success(tmp_path: Path):
    provider = _ScriptedProvider([
        ConnectionError("reset"),
        ConnectionError("reset"),
        ProviderResponse(content="finally"),
    ])
    sleeps: list[float] = []
    explainer = _explainer(provider, tmp_path, sleeps=sleeps)

    result = asyncio.run(explainer.explain(_descriptor(tmp_path), _config(retry_attempts=3, retry_delay_ms=100), TokenUsage()))

    assert result.explanation == "finally"
    assert len(provider.calls) == 3
    assert sleeps == [0.1, 0.2]


def test_explain_exhaustion_yields_error_text(tmp_path: Path):
    provider = _ScriptedProvider([RuntimeError("rate limited")])
    explainer = _explainer(provider, tmp_path)
    usage = TokenUsage()

    result = asyncio.run(explainer.explain(_descriptor(tmp_path), _config(retry_attempts=2), usage))

    assert len(provider.calls) == 3
    assert result.explanation == "Error generating explanation: rate limited"
    assert result.cached is False
    assert usage.processed_files == 1
    assert usage.total_output_tokens == 0
    assert usage.total_tokens == 0


def test_codebase_exhaustion_names_the_mode(tmp_path: Path):
    provider = _ScriptedProvider([RuntimeError("down")])
    explainer = _explainer(provider, tmp_path)
    descriptor = FileDescriptor(
        path="project-architecture",
        relative_path="Project Architecture",
        content="# Codebase Summary",
        hash="h",
        language="markdown",
        synthetic=True,
    )

    result = asyncio.run(explainer.explain(descriptor, _config(mode="architecture", retry_attempts=0), TokenUsage()))

    assert result.explanation == "Error generating architecture analysis: down"


def test_explain_is_idempotent_with_cache(tmp_path: Path):
    provider = _ScriptedProvider([ProviderResponse(content="cached answer")])
    explainer = _explainer(provider, tmp_path, cache=True)
    config = _config()
    usage = TokenUsage()

    first = asyncio.run(explainer.explain(_descriptor(tmp_path), config, usage))
    second = asyncio.run(explainer.explain(_descriptor(tmp_path), config, usage))

    assert len(provider.calls) == 1
    assert first.cached is False
    assert second.cached is True
    assert second.explanation == "cached answer"
    assert usage.cached_files == 1
    assert usage.processed_files == 1


def test_failed_explanations_are_not_cached(tmp_path: Path):
    provider = _ScriptedProvider([RuntimeError("down"), ProviderResponse(content="recovered")])
    explainer = _explainer(provider, tmp_path, cache=True)
    config = _config(retry_attempts=0)

    first = asyncio.run(explainer.explain(_descriptor(tmp_path), config, TokenUsage()))
    second = asyncio.run(explainer.explain(_descriptor(tmp_path), config, TokenUsage()))

    assert first.explanation.startswith("Error generating explanation:")
    assert second.explanation == "recovered"
    assert len(provider.calls) == 2


def test_cache_disabled_skips_lookup_and_store(tmp_path: Path):
    provider = _ScriptedProvider([ProviderResponse(content="fresh")])
    explainer = _explainer(provider, tmp_path, cache=True)
    config = _config(cache=False)

    asyncio.run(explainer.explain(_descriptor(tmp_path), config, TokenUsage()))
    asyncio.run(explainer.explain(_descriptor(tmp_path), config, TokenUsage()))

    assert len(provider.calls) == 2
    assert not list((tmp_path / "cache").glob("*.json"))


def test_token_accounting_uses_reported_usage(tmp_path: Path):
    provider = _ScriptedProvider([
        ProviderResponse(content="done", usage=Usage(prompt_tokens=100, completion_tokens=20, total_tokens=120)),
    ])
    explainer = _explainer(provider, tmp_path)
    usage = TokenUsage()

    asyncio.run(explainer.explain(_descriptor(tmp_path), _config(), usage))

    prompt = provider.calls[0][1]["content"]
    expected_input = -(-len(prompt) // 4)
    assert usage.total_input_tokens == expected_input
    assert usage.total_output_tokens == 120
    assert usage.total_tokens == expected_input + 120
