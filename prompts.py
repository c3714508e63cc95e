"""
prompts.py — Mode-specific prompt templates and rendering.

Templates use `{{name}}` placeholders. A user can override any mode by
dropping `<mode>.md` into `.codeexplain/prompts/`; otherwise the built-in
template for the mode is used.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from pathlib import Path, PurePosixPath
import re
from typing import Optional

from analyzer import FileDescriptor
from config import (
    CONFIG_DIR_NAME, ExplainConfig, LEVEL_EXPERT,
    MODE_ARCH, MODE_ARCHITECTURE, MODE_EXPLAIN, MODE_ISSUES,
    MODE_LINE_BY_LINE, MODE_ONBOARDING, MODE_SUMMARY, CODEBASE_MODES,
)

logger = logging.getLogger(__name__)


FILE_SYSTEM_PROMPT = "You are a helpful assistant that provides detailed code explanations."
CODEBASE_SYSTEM_PROMPT = "You are a helpful assistant that provides detailed code analysis and documentation."
MARKDOWN_SUFFIX = "\n\nIMPORTANT: Always respond in markdown format."


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

_FILE_HEADER = """File: {{filePath}}
Language: {{language}}

```{{language}}
{{codeContent}}
```"""

DEFAULT_TEMPLATES: dict[str, str] = {
    MODE_EXPLAIN: """You are explaining source code to {{levelDescription}}.

""" + _FILE_HEADER + """

Explain what this file does:
- Its purpose and responsibility
- The main functions, classes or components and how they interact
- Important inputs, outputs and side effects
- Anything non-obvious a reader should watch out for""",

    MODE_LINE_BY_LINE: """You are walking {{levelDescription}} through a source file line by line.

""" + _FILE_HEADER + """

Go through the code in order. For each line or small group of related lines,
quote it and explain what it does and why it is there.""",

    MODE_SUMMARY: """Summarize this file for {{levelDescription}} in 2-3 sentences.

""" + _FILE_HEADER + """

State the file's main responsibility and the key abstractions it defines.
Output only the summary text.""",

    MODE_ISSUES: """You are reviewing source code for {{levelDescription}}.

""" + _FILE_HEADER + """

List potential bugs, security problems, performance issues and maintainability
concerns. For each issue give the location, why it matters and a suggested fix.""",

    MODE_ARCHITECTURE: """You are describing the architecture of a codebase to {{levelDescription}}.

{{codebaseSummary}}

Describe the overall architecture: the main components and their
responsibilities, how data and control flow between them, external
dependencies, and the key design decisions visible in the structure.""",

    MODE_ONBOARDING: """You are writing an onboarding guide for {{levelDescription}} joining this project.

{{codebaseSummary}}

Cover: what the project does, how the code is organized, where to start
reading, how the main pieces fit together, and practical tips for making a
first change.""",
}

GENERIC_TEMPLATE = """You are an AI assistant that explains code.

Please explain the following {{language}} code file:

File: {{filePath}}

Code:
{{codeContent}}

Please provide a clear explanation in markdown format."""

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def level_description(level: str) -> str:
    return "an expert developer" if level == LEVEL_EXPERT else "a beginner developer"


def resolve_mode(mode: Optional[str]) -> str:
    mode = mode or MODE_EXPLAIN
    return MODE_ARCHITECTURE if mode == MODE_ARCH else mode


def render(template: str, variables: dict[str, str]) -> str:
    """Substitute every `{{name}}` that has a value; unknown names are left as-is."""
    def _sub(m: re.Match) -> str:
        value = variables.get(m.group(1))
        return m.group(0) if value is None else str(value)
    return _PLACEHOLDER.sub(_sub, template)


# ---------------------------------------------------------------------------
# Template lookup and prompt building
# ---------------------------------------------------------------------------

class PromptManager:
    def __init__(self, user_prompts_dir: Optional[Path] = None):
        if user_prompts_dir is None:
            user_prompts_dir = Path.cwd() / CONFIG_DIR_NAME / "prompts"
        self.user_prompts_dir = user_prompts_dir

    def get_template(self, mode: str) -> str:
        user_template = self.user_prompts_dir / f"{mode}.md"
        if user_template.is_file():
            try:
                return user_template.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Could not read prompt template %s: %s", user_template, e)

        if mode in DEFAULT_TEMPLATES:
            return DEFAULT_TEMPLATES[mode]

        logger.warning(
            "Prompt for mode '%s' not found in user or default templates. Using generic fallback prompt.",
            mode,
        )
        return GENERIC_TEMPLATE

    def build_prompt(self, descriptor: FileDescriptor, config: ExplainConfig) -> str:
        mode = resolve_mode(config.mode)
        template = self.get_template(mode)
        if mode in CODEBASE_MODES:
            variables = {
                "levelDescription": level_description(config.level),
                "codebaseSummary": descriptor.content,
            }
        else:
            variables = {
                "levelDescription": level_description(config.level),
                "language": descriptor.language,
                "filePath": descriptor.path,
                "codeContent": descriptor.content,
            }
        return render(template, variables) + MARKDOWN_SUFFIX

    @staticmethod
    def system_prompt(config: ExplainConfig) -> str:
        return CODEBASE_SYSTEM_PROMPT if config.is_codebase_mode else FILE_SYSTEM_PROMPT


# ---------------------------------------------------------------------------
# Codebase summary document (input to the architecture/onboarding call)
# ---------------------------------------------------------------------------

_KEY_FILE_MARKERS = ("package.json", "main", "index", "app", "config")
MAX_KEY_FILES = 5
KEY_FILE_EXCERPT_CHARS = 1000


@dataclass
class KeyFileExcerpt:
    relative_path: str
    language: str
    excerpt: str


def collect_key_files(files: list[FileDescriptor]) -> list[KeyFileExcerpt]:
    """Snapshot the head of a few entry-point-looking files before their content is released."""
    out: list[KeyFileExcerpt] = []
    for f in files:
        if not any(marker in f.relative_path for marker in _KEY_FILE_MARKERS):
            continue
        excerpt = f.content[:KEY_FILE_EXCERPT_CHARS]
        if len(f.content) > KEY_FILE_EXCERPT_CHARS:
            excerpt += "\n... (truncated)"
        out.append(KeyFileExcerpt(f.relative_path, f.language, excerpt))
        if len(out) >= MAX_KEY_FILES:
            break
    return out


def build_codebase_summary(
    files: list[FileDescriptor],
    summaries: dict[str, str],
    key_files: list[KeyFileExcerpt],
) -> str:
    lines = ["# Codebase Summary", "", "## Project Structure", ""]

    by_dir: dict[str, list[FileDescriptor]] = {}
    for f in files:
        parent = str(PurePosixPath(f.relative_path).parent)
        by_dir.setdefault(parent, []).append(f)

    for directory, dir_files in by_dir.items():
        lines.append(f"### {'Root Directory' if directory == '.' else directory}")
        lines.append("")
        for f in dir_files:
            name = PurePosixPath(f.relative_path).name
            summary = summaries.get(f.relative_path) or "[no summary]"
            lines.append(f"- **{name}** ({f.language}): {summary}")
        lines.append("")

    languages = list(dict.fromkeys(f.language for f in files))
    extensions = list(dict.fromkeys(PurePosixPath(f.relative_path).suffix for f in files))
    lines += [
        "## Technology Stack",
        "",
        f"- **Languages**: {', '.join(languages)}",
        f"- **File Types**: {', '.join(extensions)}",
        "",
        "## Key Files Content",
        "",
    ]
    for kf in key_files:
        lines += [f"### {kf.relative_path}", "", f"```{kf.language}", kf.excerpt, "```", ""]

    return "\n".join(lines)
