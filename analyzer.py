"""
analyzer.py — Source file discovery and FileDescriptor construction.

Turns a file or directory path into an ordered list of FileDescriptors
for the explanation scheduler. A descriptor owns the file's text until
the scheduler has processed it; the scheduler then clears `content`.
"""

from __future__ import annotations
from dataclasses import dataclass
import fnmatch
import hashlib
import logging
from pathlib import Path
from typing import Optional

from config import ExplainConfig

logger = logging.getLogger(__name__)


OUTPUT_FILE_PREFIX = "codeexplain-output"


# ---------------------------------------------------------------------------
# Language registry
# ---------------------------------------------------------------------------

_EXT_MAP: dict[str, str] = {
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript", ".cjs": "javascript",
    ".ts": "typescript", ".tsx": "typescript",
    ".vue": "vue", ".svelte": "svelte", ".astro": "astro",
    ".html": "html", ".htm": "html", ".xml": "xml", ".svg": "xml",
    ".css": "css", ".scss": "scss", ".sass": "sass", ".less": "less",
    ".php": "php", ".jsp": "java", ".ejs": "html", ".hbs": "handlebars", ".handlebars": "handlebars",
    ".py": "python",
    ".java": "java",
    ".c": "c", ".h": "c",
    ".cpp": "cpp", ".cxx": "cpp", ".cc": "cpp", ".hpp": "cpp",
    ".cs": "csharp", ".vb": "vbnet", ".fs": "fsharp", ".fsx": "fsharp",
    ".go": "go",
    ".rs": "rust",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".rb": "ruby",
    ".pl": "perl", ".pm": "perl",
    ".tcl": "tcl",
    ".lua": "lua",
    ".dart": "dart",
    ".r": "r",
    ".m": "objectivec", ".matlab": "matlab",
    ".asm": "asm", ".s": "asm",
    ".zig": "zig", ".v": "v", ".nim": "nim", ".cr": "crystal",
    ".hs": "haskell", ".ml": "ocaml", ".elm": "elm", ".purs": "purescript",
    ".clj": "clojure", ".cljs": "clojure", ".scm": "scheme", ".rkt": "racket",
    ".ex": "elixir", ".exs": "elixir", ".erl": "erlang", ".hrl": "erlang",
    ".graphql": "graphql", ".gql": "graphql",
    ".sh": "bash", ".bash": "bash", ".zsh": "bash", ".awk": "awk", ".sed": "sed",
    ".mk": "makefile", ".cmake": "cmake", ".gradle": "groovy", ".dockerfile": "dockerfile",
}


def detect_language(extension: str) -> str:
    return _EXT_MAP.get(extension.lower(), "plaintext")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class FileDescriptor:
    path: str
    relative_path: str
    content: str
    hash: str
    language: str
    size: int = 0
    mtime_ms: int = 0
    synthetic: bool = False


def bytes_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def content_hash(content: str) -> str:
    return bytes_hash(content.encode("utf-8"))


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

class FileFilter:
    """Extension and exclude-pattern checks for candidate files."""

    def __init__(self, code_extensions: tuple[str, ...], exclude: tuple[str, ...]):
        self.code_extensions = {e.lower() for e in code_extensions}
        self.exact = {p for p in exclude if "*" not in p}
        self.wildcards = [p for p in exclude if "*" in p]

    def is_excluded(self, rel: Path) -> bool:
        name = rel.name
        if any(fnmatch.fnmatchcase(name, p) for p in self.wildcards):
            return True
        rel_posix = rel.as_posix()
        for pattern in self.exact:
            if pattern in rel.parts:
                return True
            # multi-segment patterns such as ".github/workflows"
            if "/" in pattern and (rel_posix == pattern or rel_posix.startswith(pattern + "/")):
                return True
        return False

    def accepts(self, rel: Path) -> bool:
        if rel.name.startswith(OUTPUT_FILE_PREFIX):
            return False
        if rel.suffix.lower() not in self.code_extensions:
            return False
        return not self.is_excluded(rel)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def analyze_file(
    path: Path,
    *,
    base: Optional[Path] = None,
    max_size_bytes: int,
) -> Optional[FileDescriptor]:
    """Read one file into a descriptor. Returns None if too large or unreadable."""
    try:
        st = path.stat()
    except OSError as e:
        logger.warning("Could not stat %s: %s", path, e)
        return None

    if st.st_size > max_size_bytes:
        logger.warning(
            "Skipping large file: %s (%.1fMB > %.1fMB limit)",
            path, st.st_size / 1024 / 1024, max_size_bytes / 1024 / 1024,
        )
        return None

    try:
        raw = path.read_bytes()
    except OSError as e:
        logger.warning("Could not read %s: %s", path, e)
        return None
    # no newline translation: the hash and the text both see the bytes as written
    content = raw.decode("utf-8", errors="replace")

    relative = path.relative_to(base).as_posix() if base is not None else path.name
    return FileDescriptor(
        path=str(path),
        relative_path=relative,
        content=content,
        hash=bytes_hash(raw),
        language=detect_language(path.suffix),
        size=st.st_size,
        mtime_ms=st.st_mtime_ns // 1_000_000,
    )


def discover_files(root: Path, file_filter: FileFilter) -> list[Path]:
    files: list[Path] = []
    for p in root.rglob("*"):
        if not p.is_file():
            continue
        if file_filter.accepts(p.relative_to(root)):
            files.append(p)
    return sorted(files)


def analyze_path(target: Path | str, config: ExplainConfig) -> list[FileDescriptor]:
    """
    Analyze a file or a directory tree.

    A file named explicitly is always included (apart from our own output
    files); directory contents go through the extension/exclude filter.
    """
    full = Path(target).resolve()
    if not full.exists():
        raise FileNotFoundError(f"Path does not exist: {full}")

    max_size_bytes = int(config.max_file_size_mb * 1024 * 1024)

    if full.is_file():
        if full.name.startswith(OUTPUT_FILE_PREFIX):
            return []
        descriptor = analyze_file(full, max_size_bytes=max_size_bytes)
        return [descriptor] if descriptor is not None else []

    if not full.is_dir():
        raise ValueError(f"Unsupported file type: {full}")

    file_filter = FileFilter(config.code_extensions, config.exclude)
    descriptors: list[FileDescriptor] = []
    for p in discover_files(full, file_filter):
        descriptor = analyze_file(p, base=full, max_size_bytes=max_size_bytes)
        if descriptor is not None:
            descriptors.append(descriptor)
    logger.debug("Analyzed %d file(s) under %s", len(descriptors), full)
    return descriptors


def analyze_paths(targets: list[Path | str], config: ExplainConfig) -> list[FileDescriptor]:
    out: list[FileDescriptor] = []
    for target in targets:
        out.extend(analyze_path(target, config))
    return out
