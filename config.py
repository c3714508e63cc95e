"""
config.py — Run configuration for codeexplain.

The config is an immutable value. Anything that needs a variant (the
per-file "summary" pass of the codebase modes, CLI overrides) builds a
new one with dataclasses.replace instead of mutating a shared object.

On disk the config lives in `.codeexplain/config.json` under the working
directory. A default file is written on first use.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, fields, replace
import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


CONFIG_DIR_NAME = ".codeexplain"
CONFIG_FILE_NAME = "config.json"
API_KEY_ENV = "CODEEXPLAIN_API_KEY"


# ---------------------------------------------------------------------------
# Modes, levels, providers
# ---------------------------------------------------------------------------

MODE_EXPLAIN = "explain"
MODE_LINE_BY_LINE = "linebyline"
MODE_SUMMARY = "summary"
MODE_ISSUES = "issues"
MODE_ARCHITECTURE = "architecture"
MODE_ARCH = "arch"
MODE_ONBOARDING = "onboarding"

MODES = (
    MODE_EXPLAIN, MODE_LINE_BY_LINE, MODE_SUMMARY, MODE_ISSUES,
    MODE_ARCHITECTURE, MODE_ARCH, MODE_ONBOARDING,
)
CODEBASE_MODES = frozenset({MODE_ARCHITECTURE, MODE_ARCH, MODE_ONBOARDING})

LEVEL_BEGINNER = "beginner"
LEVEL_EXPERT = "expert"
LEVELS = (LEVEL_BEGINNER, LEVEL_EXPERT)

PROVIDER_GEMINI = "gemini"
PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OLLAMA = "ollama"

DEFAULT_MODELS: dict[str, str] = {
    PROVIDER_GEMINI: "gemini-2.5-flash",
    PROVIDER_OPENAI: "gpt-4o",
    PROVIDER_ANTHROPIC: "claude-haiku-4-5-20251001",
    PROVIDER_OLLAMA: "llama2",
}

# Providers that run locally and need no credential.
LOCAL_PROVIDERS = frozenset({PROVIDER_OLLAMA})

DEFAULT_CONCURRENCY = 3
MAX_CONCURRENCY = 10
DEFAULT_MAX_FILE_SIZE_MB = 5

DEFAULT_CODE_EXTENSIONS: tuple[str, ...] = (
    # Web
    ".js", ".jsx", ".ts", ".tsx", ".vue", ".svelte", ".astro",
    ".html", ".htm", ".xml", ".svg", ".css", ".scss", ".sass", ".less",
    ".php", ".asp", ".jsp", ".ejs", ".hbs", ".handlebars",
    # Backend
    ".py", ".java", ".c", ".cpp", ".cxx", ".cc", ".h", ".hpp",
    ".cs", ".vb", ".fs", ".fsx", ".go", ".rs", ".swift", ".kt", ".scala",
    ".rb", ".pl", ".pm", ".tcl", ".lua", ".dart", ".r", ".m", ".matlab",
    # Systems
    ".asm", ".s", ".zig", ".v", ".nim", ".cr",
    # Functional
    ".hs", ".ml", ".elm", ".purs", ".clj", ".cljs", ".scm", ".rkt",
    ".ex", ".exs", ".erl", ".hrl",
    # Query / shell / build
    ".graphql", ".gql", ".sh", ".bash", ".zsh", ".awk", ".sed",
    ".mk", ".cmake", ".gradle", ".dockerfile",
)

DEFAULT_EXCLUDES: tuple[str, ...] = (
    # VCS
    ".git", ".svn", ".hg", ".bzr",
    # Dependencies
    "node_modules", "vendor", "packages", "bower_components", "jspm_packages",
    ".venv", "venv",
    # Build outputs
    "dist", "build", "target", "bin", "obj", ".next", ".nuxt", ".output",
    # Editors / OS
    ".vscode", ".idea", ".vs", "*.swp", "*.swo", "*~", ".DS_Store", "Thumbs.db",
    # Logs
    "*.log", "logs", "log",
    # Caches
    ".cache", "__pycache__", ".pytest_cache", ".mypy_cache", ".tox",
    ".coverage", ".nyc_output", "coverage", ".eslintcache", ".sass-cache",
    # Temp / archives
    "tmp", "temp", ".tmp", ".temp", "*.zip", "*.tar.gz", "*.tar", "*.bak",
    # Env files
    ".env", ".env.*",
    # Tests
    "tests", "test", "__tests__", "*.test.*", "*.spec.*", "e2e",
    # Our own state
    CONFIG_DIR_NAME,
)


class ConfigError(Exception):
    pass


# ---------------------------------------------------------------------------
# Config value
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExplainConfig:
    provider: str = PROVIDER_GEMINI
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    mode: str = MODE_EXPLAIN
    level: str = LEVEL_BEGINNER
    max_tokens: int = 15000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    concurrency: int = DEFAULT_CONCURRENCY
    cache: bool = True
    cache_dir: Optional[Path] = None
    verbose: bool = False
    max_file_size_mb: float = DEFAULT_MAX_FILE_SIZE_MB
    code_extensions: tuple[str, ...] = DEFAULT_CODE_EXTENSIONS
    exclude: tuple[str, ...] = DEFAULT_EXCLUDES

    def __post_init__(self):
        if self.mode not in MODES:
            raise ConfigError(f"Unknown mode: {self.mode}. Supported modes are: {', '.join(MODES)}")
        if self.level not in LEVELS:
            raise ConfigError(f"Unknown level: {self.level}. Supported levels are: {', '.join(LEVELS)}")
        if self.model is None and self.provider in DEFAULT_MODELS:
            object.__setattr__(self, "model", DEFAULT_MODELS[self.provider])
        object.__setattr__(self, "concurrency", clamp_concurrency(self.concurrency))
        object.__setattr__(self, "code_extensions", tuple(e.lower() for e in self.code_extensions))
        object.__setattr__(self, "exclude", tuple(self.exclude))
        if self.cache_dir is not None:
            object.__setattr__(self, "cache_dir", Path(self.cache_dir))

    @property
    def is_codebase_mode(self) -> bool:
        return self.mode in CODEBASE_MODES

    @property
    def requires_api_key(self) -> bool:
        return self.provider not in LOCAL_PROVIDERS

    def with_mode(self, mode: str) -> "ExplainConfig":
        return replace(self, mode=mode)

    def cache_fields(self) -> dict[str, Optional[str]]:
        """The non-secret subset that identifies a cached explanation."""
        return {
            "mode": self.mode,
            "level": self.level,
            "provider": self.provider,
            "model": self.model,
        }

    def redacted(self) -> dict:
        data = asdict(self)
        if data.get("api_key"):
            data["api_key"] = "***"
        data.pop("code_extensions")
        data.pop("exclude")
        return data


def clamp_concurrency(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_CONCURRENCY
    return max(1, min(int(value), MAX_CONCURRENCY))


# ---------------------------------------------------------------------------
# File loading
# ---------------------------------------------------------------------------

# camelCase keys accepted in config.json
_JSON_ALIASES = {
    "apiKey": "api_key",
    "baseUrl": "base_url",
    "maxTokens": "max_tokens",
    "maxFileSize": "max_file_size_mb",
    "codeExtensions": "code_extensions",
    "cacheDir": "cache_dir",
}

_FIELD_NAMES = {f.name for f in fields(ExplainConfig)}


def default_config_path(cwd: Optional[Path] = None) -> Path:
    return (cwd or Path.cwd()) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def _normalise(raw: dict) -> dict:
    out: dict = {}
    for key, value in raw.items():
        if key == "retry" and isinstance(value, dict):
            if "attempts" in value:
                out["retry_attempts"] = value["attempts"]
            if "delay" in value:
                out["retry_delay_ms"] = value["delay"]
            continue
        key = _JSON_ALIASES.get(key, key)
        if key in _FIELD_NAMES:
            out[key] = value
    for key in ("code_extensions", "exclude"):
        if key in out and out[key] is not None:
            out[key] = tuple(out[key])
    return out


def _default_file_payload() -> dict:
    defaults = ExplainConfig()
    return {
        "provider": defaults.provider,
        "model": defaults.model,
        "mode": defaults.mode,
        "level": defaults.level,
        "maxTokens": defaults.max_tokens,
        "baseUrl": None,
        "retry": {"attempts": defaults.retry_attempts, "delay": defaults.retry_delay_ms},
        "concurrency": defaults.concurrency,
        "maxFileSize": defaults.max_file_size_mb,
        "codeExtensions": list(defaults.code_extensions),
        "exclude": list(defaults.exclude),
    }


def load_config(config_path: Optional[Path] = None, **overrides) -> ExplainConfig:
    """
    Build the run config from the JSON config file plus explicit overrides.

    Overrides whose value is None are ignored so CLI flags that were not
    passed do not clobber file values. When no explicit path is given and
    the default file is missing, a default file is written.
    """
    if config_path is not None:
        path = Path(config_path).resolve()
        if not path.exists():
            raise ConfigError(f"Config file does not exist: {path}")
    else:
        path = default_config_path()

    raw: dict = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not load configuration from {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration in {path} must be a JSON object")
    else:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(_default_file_payload(), indent=2), encoding="utf-8")
            logger.debug("Wrote default config to %s", path)
        except OSError as e:
            logger.warning("Could not write default config to %s: %s", path, e)

    values = _normalise(raw)
    values.update({k: v for k, v in _normalise(overrides).items() if v is not None})

    # A model pinned for one provider must not leak into another.
    if overrides.get("provider") and not overrides.get("model") and "provider" in raw:
        if overrides["provider"] != raw.get("provider"):
            values.pop("model", None)

    if not values.get("api_key"):
        env_key = os.environ.get(API_KEY_ENV)
        if env_key:
            values["api_key"] = env_key

    return ExplainConfig(**values)
