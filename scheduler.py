"""
scheduler.py — Bounded-concurrency batch execution of the explainer.

Execution order for a plain run:
  1. Split the files into consecutive batches of `config.concurrency`
  2. Launch every file of a batch at once and wait for the whole batch
     (a failing file never cancels its siblings)
  3. Move on to the next batch

Codebase modes (architecture / onboarding) run in two phases:
  1. The same batched run over all files with the mode set to "summary"
  2. One synthesis call over a codebase summary document built from the
     phase 1 summaries, pushed through the same cache/retry path under a
     synthetic path

Results keep the input order no matter which call finishes first. Each
run gets its own TokenUsage, returned with the results.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
import gc
import logging
import math
from typing import Callable, Optional

from analyzer import FileDescriptor, content_hash
from config import ExplainConfig, MODE_ARCHITECTURE, MODE_ONBOARDING, MODE_SUMMARY
from explainer import ExplainedFile, Explainer, TokenUsage
from prompts import build_codebase_summary, collect_key_files, resolve_mode

logger = logging.getLogger(__name__)


# (identifier, completed, total, percent, cached, is_starting)
ProgressCallback = Callable[[str, int, int, int, bool, bool], None]

GC_EVERY_BATCHES = 5
FINAL_ANALYSIS_ID = "Final analysis"

_SYNTHETIC_PATHS = {
    MODE_ARCHITECTURE: ("project-architecture", "Project Architecture"),
    MODE_ONBOARDING: ("developer-onboarding", "Developer Onboarding"),
}


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class RunResult:
    results: list[Optional[ExplainedFile]]
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def explained(self) -> list[ExplainedFile]:
        return [r for r in self.results if r is not None]

    @property
    def failed_slots(self) -> int:
        return sum(1 for r in self.results if r is None)


def percent(completed: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    if total <= 0:
        return 100
    return int(math.floor(completed / total * 100 + 0.5))


def synthetic_descriptor(mode: str, document: str) -> FileDescriptor:
    path, title = _SYNTHETIC_PATHS[resolve_mode(mode)]
    return FileDescriptor(
        path=path,
        relative_path=title,
        content=document,
        hash=content_hash(document),
        language="markdown",
        size=len(document.encode("utf-8")),
        synthetic=True,
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class ExplanationScheduler:
    def __init__(self, explainer: Explainer, *, gc_every_batches: int = GC_EVERY_BATCHES):
        self.explainer = explainer
        self.gc_every_batches = max(1, gc_every_batches)

    @staticmethod
    def _chunked(items: list, size: int) -> list[list]:
        return [items[i:i + size] for i in range(0, len(items), size)]

    @staticmethod
    def _notify(on_progress: Optional[ProgressCallback], *args) -> None:
        if on_progress is None:
            return
        try:
            on_progress(*args)
        except Exception as e:
            logger.warning("Progress callback failed for %s: %s", args[0], e)

    async def _run_batches(
        self,
        files: list[FileDescriptor],
        config: ExplainConfig,
        usage: TokenUsage,
        on_progress: Optional[ProgressCallback],
    ) -> list[Optional[ExplainedFile]]:
        total = len(files)
        results: list[Optional[ExplainedFile]] = [None] * total
        completed = 0

        async def _task(index: int, descriptor: FileDescriptor) -> None:
            nonlocal completed
            cached = False
            try:
                result = await self.explainer.explain(descriptor, config, usage)
                results[index] = result
                cached = result.cached
            except Exception as e:
                logger.error("Unexpected error processing %s: %s", descriptor.path, e)
            finally:
                descriptor.content = ""
            completed += 1
            self._notify(on_progress, descriptor.path, completed, total, percent(completed, total), cached, False)

        batches = self._chunked(list(enumerate(files)), config.concurrency)
        for batch_no, batch in enumerate(batches, start=1):
            logger.debug("Batch %d/%d: %d file(s)", batch_no, len(batches), len(batch))
            await asyncio.gather(*[_task(index, descriptor) for index, descriptor in batch])
            if batch_no % self.gc_every_batches == 0:
                gc.collect()

        return results

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def run(
        self,
        files: list[FileDescriptor],
        config: ExplainConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        if config.is_codebase_mode:
            return await self.run_codebase(files, config, on_progress)

        usage = TokenUsage()
        logger.info("Explaining %d file(s), %d at a time", len(files), config.concurrency)
        results = await self._run_batches(files, config, usage, on_progress)
        return RunResult(results=results, usage=usage)

    async def run_one(
        self,
        file: FileDescriptor,
        config: ExplainConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        return await self.run([file], config, on_progress)

    async def run_codebase(
        self,
        files: list[FileDescriptor],
        config: ExplainConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        usage = TokenUsage()
        if not files:
            return RunResult(results=[], usage=usage)

        # phase 1 clears each file's content as it settles
        key_files = collect_key_files(files)

        logger.info("Summarizing %d file(s) for %s analysis", len(files), config.mode)
        summaries = await self._run_batches(files, config.with_mode(MODE_SUMMARY), usage, on_progress)
        summary_map = {r.relative_path: r.explanation for r in summaries if r is not None}

        document = build_codebase_summary(files, summary_map, key_files)
        descriptor = synthetic_descriptor(config.mode, document)

        logger.info("Generating %s analysis", config.mode)
        result: Optional[ExplainedFile] = None
        try:
            result = await self.explainer.explain(descriptor, config, usage)
        except Exception as e:
            logger.error("Unexpected error generating %s analysis: %s", config.mode, e)
        finally:
            descriptor.content = ""

        total = len(files)
        self._notify(
            on_progress, FINAL_ANALYSIS_ID, total, total, 100,
            result.cached if result is not None else False, False,
        )
        return RunResult(results=[result], usage=usage)
