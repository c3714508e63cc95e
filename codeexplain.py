#!/usr/bin/env python3
"""
codeexplain.py — CLI entry point.

Usage:
    # Explain every source file under a directory
    codeexplain src/

    # One file, walked through line by line
    codeexplain app/main.py --mode linebyline

    # Architecture overview of a whole project, expert audience
    codeexplain . --mode architecture --level expert

    # Another provider / model
    codeexplain src/ --provider openai --model gpt-4o-mini

    # Save the markdown report elsewhere, plus a JSON report
    codeexplain src/ --output docs/explained.md --json-output explained.json

    # Ignore cached explanations for this run
    codeexplain src/ --no-cache

Environment:
    CODEEXPLAIN_API_KEY  — API key for the remote provider (or pass --api-key,
                           or set apiKey in .codeexplain/config.json)

Without an API key for a remote provider the run is offline: files are
analyzed and listed in the report without AI explanations.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from analyzer import OUTPUT_FILE_PREFIX, analyze_paths
from cache import FingerprintCache
from config import MODE_LINE_BY_LINE, MODES, LEVELS, ConfigError, ExplainConfig, load_config
from explainer import ExplainedFile, Explainer, TokenUsage
from prompts import PromptManager
from providers import SUPPORTED_PROVIDERS, ProviderError, check_provider, create_provider
from scheduler import ExplanationScheduler, ProgressCallback

logger = logging.getLogger("codeexplain")


OFFLINE_EXPLANATION = (
    "Offline mode: AI explanation not available. "
    "Please provide an API key to get AI-powered explanations."
)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_markdown_report(
    title: str,
    explained: list[ExplainedFile],
    config: ExplainConfig,
    usage: Optional[TokenUsage] = None,
) -> str:
    lines = [
        f"# {title}",
        "",
        f"*{len(explained)} file(s) | Mode: {config.mode} | Level: {config.level} | "
        f"Provider: {config.provider} ({config.model})*",
        "",
    ]

    for item in explained:
        lines += ["---", "", f"## `{item.relative_path}`"]
        meta = [f"*{item.path}*"]
        if item.descriptor.language and not item.descriptor.synthetic:
            meta.append(item.descriptor.language)
        if item.cached:
            meta.append("cached")
        lines += [" | ".join(meta), "", item.explanation, ""]

    if usage is not None:
        lines += [
            "---", "", "## Usage Summary", "",
            f"- Files processed: {usage.processed_files}",
            f"- Files from cache: {usage.cached_files}",
            f"- Input tokens: {usage.total_input_tokens:,}",
            f"- Output tokens: {usage.total_output_tokens:,}",
            f"- Total tokens: {usage.total_tokens:,}",
        ]

    return "\n".join(lines)


def build_json_report(
    title: str,
    explained: list[ExplainedFile],
    config: ExplainConfig,
    usage: Optional[TokenUsage] = None,
) -> dict:
    return {
        "title": title,
        "config": config.cache_fields(),
        "files": [item.to_dict() for item in explained],
        "usage": vars(usage) if usage is not None else None,
    }


# ---------------------------------------------------------------------------
# Console output
# ---------------------------------------------------------------------------

def display_path(path: str, targets: list[str]) -> str:
    if not os.path.isabs(path):
        return path
    if len(targets) == 1:
        base = Path(targets[0]).resolve()
        if base.is_dir():
            try:
                return Path(path).resolve().relative_to(base).as_posix()
            except ValueError:
                pass
    return Path(path).name


def make_progress_printer(targets: list[str]) -> ProgressCallback:
    counter = 0

    def _on_progress(path: str, completed: int, total: int, pct: int, cached: bool, is_starting: bool) -> None:
        nonlocal counter
        if is_starting:
            return
        counter += 1
        cache_tag = "[CACHE] " if cached else ""
        print(f"{counter:02d} - [{pct:02d}%] {cache_tag}{display_path(path, targets)}", flush=True)

    return _on_progress


def print_usage_summary(usage: TokenUsage) -> None:
    print("\n📊 Usage Summary:")
    print(f"   Files processed: {usage.processed_files}")
    print(f"   Files from cache: {usage.cached_files}")
    print(f"   Input tokens: {usage.total_input_tokens:,}")
    print(f"   Output tokens: {usage.total_output_tokens:,}")
    print(f"   Total tokens: {usage.total_tokens:,}")


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codeexplain",
        description="Explain source files with an LLM, caching results between runs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("paths", nargs="+",
                        help="Files and/or directories to explain")
    parser.add_argument("--config", type=Path, default=None,
                        help="Config file (default: .codeexplain/config.json)")
    parser.add_argument("--provider", choices=SUPPORTED_PROVIDERS, default=None,
                        help="AI provider (default: from config, else gemini)")
    parser.add_argument("--model", default=None,
                        help="Model name (default: provider's default model)")
    parser.add_argument("--api-key", default=None,
                        help="API key (default: config file or CODEEXPLAIN_API_KEY)")
    parser.add_argument("--base-url", default=None,
                        help="Override the provider endpoint URL")
    parser.add_argument("--mode", "-m", choices=MODES, default=None,
                        help="Explanation mode (default: explain)")
    parser.add_argument("--level", "-l", choices=LEVELS, default=None,
                        help="Audience level (default: beginner)")
    parser.add_argument("--max-tokens", type=int, default=None,
                        help="Max completion tokens per request (default: 15000)")
    parser.add_argument("--concurrency", type=int, default=None,
                        help="Files explained at once, 1-10 (default: 3)")
    parser.add_argument("--cache-dir", type=Path, default=None,
                        help="Cache directory (default: .codeexplain/cache)")
    parser.add_argument("--no-cache", action="store_true",
                        help="Disable caching (always call the provider)")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help=f"Markdown report path (default: {OUTPUT_FILE_PREFIX}.md)")
    parser.add_argument("--json-output", type=Path, default=None,
                        help="Also write a JSON report")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging and configuration details")
    return parser


async def main(argv: Optional[list[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)

    configure_logging(args.verbose)

    try:
        config = load_config(
            args.config,
            provider=args.provider,
            model=args.model,
            api_key=args.api_key,
            base_url=args.base_url,
            mode=args.mode,
            level=args.level,
            max_tokens=args.max_tokens,
            concurrency=args.concurrency,
            cache_dir=args.cache_dir,
            cache=False if args.no_cache else None,
            verbose=True if args.verbose else None,
        )
    except ConfigError as e:
        _fail(str(e))
    configure_logging(config.verbose)

    try:
        check_provider(config.provider)
    except ProviderError as e:
        _fail(str(e))

    if config.mode == MODE_LINE_BY_LINE:
        if len(args.paths) != 1:
            _fail("Line-by-line mode can only be used with a single file.")
        if Path(args.paths[0]).is_dir():
            _fail("Line-by-line mode can only be used with individual files, not directories.")

    if config.verbose:
        logger.debug("Configuration: %s", json.dumps(config.redacted(), default=str))

    print(f"\n🔍 Analyzing: {', '.join(args.paths)}", flush=True)
    try:
        files = analyze_paths(args.paths, config)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    print(f"   Found {len(files)} file(s) to analyze", flush=True)

    if not files:
        print("Nothing to explain.")
        return

    for i, f in enumerate(files, start=1):
        logger.debug("%d. %s (%s) - %d chars", i, f.relative_path, f.language, len(f.content))

    start = time.time()
    usage: Optional[TokenUsage] = None

    if config.requires_api_key and not config.api_key:
        print("⚠️  No API key provided. Running in offline mode.", flush=True)
        explained = [ExplainedFile(f, OFFLINE_EXPLANATION, cached=False) for f in files]
    else:
        try:
            provider = create_provider(config)
        except ProviderError as e:
            _fail(str(e))

        cache = FingerprintCache(config.cache_dir) if config.cache else None
        scheduler = ExplanationScheduler(Explainer(provider, cache=cache, prompts=PromptManager()))

        print(f"\n🤖 Generating explanations ({config.provider} / {config.model}, mode: {config.mode})...", flush=True)
        try:
            run = await scheduler.run(files, config, on_progress=make_progress_printer(args.paths))
        finally:
            await provider.aclose()
        explained = run.explained
        usage = run.usage
        if run.failed_slots:
            print(f"⚠️  {run.failed_slots} file(s) could not be explained", flush=True)

    elapsed = time.time() - start
    print(f"\n✅ Complete in {elapsed:.1f}s\n", flush=True)

    title = f"Code Explanation: {', '.join(args.paths)}"
    output = args.output or Path(f"{OUTPUT_FILE_PREFIX}.md")
    output.write_text(build_markdown_report(title, explained, config, usage), encoding="utf-8")
    print(f"📄 Report written to: {output}")

    if args.json_output:
        args.json_output.write_text(
            json.dumps(build_json_report(title, explained, config, usage), indent=2),
            encoding="utf-8",
        )
        print(f"📊 JSON report written to: {args.json_output}")

    if usage is not None:
        print_usage_summary(usage)


def run_cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()
