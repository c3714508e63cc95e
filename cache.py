"""
cache.py — Fingerprint cache for explanations.

One JSON record per (path, mode, level, provider, model). A record is
validated against the file before it is served:

  1. stored mtime and size both match the file  -> hit, no content read
  2. size matches, mtime differs                -> read + hash once; on a
     hash match refresh the stored mtime and hit
  3. anything else                              -> miss

The cache is an optimization only. Read or write failures are logged and
degrade to a miss or a skipped write; they never reach the caller.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

from analyzer import bytes_hash, content_hash
from config import CONFIG_DIR_NAME, ExplainConfig

logger = logging.getLogger(__name__)


def default_cache_dir() -> Path:
    return Path.cwd() / CONFIG_DIR_NAME / "cache"


def now_iso_utc() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CacheRecord:
    key: str
    file_hash: str
    file_size: Optional[int]
    mtime: int
    explanation: str
    timestamp: str = field(default_factory=now_iso_utc)
    config: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        return {
            "fileHash": self.file_hash,
            "fileSize": self.file_size,
            "mtime": self.mtime,
            "explanation": self.explanation,
            "timestamp": self.timestamp,
            "config": self.config,
        }

    @classmethod
    def from_json(cls, key: str, raw: dict) -> "CacheRecord":
        if not isinstance(raw, dict):
            raise ValueError("cache record is not a JSON object")
        explanation = raw["explanation"]
        if not isinstance(explanation, str):
            raise ValueError("cache record explanation is not a string")
        return cls(
            key=key,
            file_hash=raw.get("fileHash", ""),
            file_size=raw.get("fileSize"),
            mtime=raw.get("mtime", 0),
            explanation=explanation,
            timestamp=raw.get("timestamp", ""),
            config=raw.get("config", {}),
        )


class FingerprintCache:
    def __init__(self, cache_dir: Optional[Path] = None):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Could not create cache directory %s: %s", self.cache_dir, e)

    @staticmethod
    def key(path: str, config: ExplainConfig) -> str:
        key_string = f"{path}-{config.mode}-{config.level}-{config.provider}-{config.model}"
        return hashlib.md5(key_string.encode("utf-8"), usedforsecurity=False).hexdigest()

    def record_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    # -----------------------------------------------------------------------
    # I/O primitives
    # -----------------------------------------------------------------------

    def _read_record(self, key: str) -> Optional[CacheRecord]:
        f = self.record_path(key)
        if not f.exists():
            return None
        raw = json.loads(f.read_text(encoding="utf-8"))
        return CacheRecord.from_json(key, raw)

    def _write_record(self, record: CacheRecord) -> None:
        path = self.record_path(record.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.to_json()), encoding="utf-8")
        os.replace(tmp, path)

    def _read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    @staticmethod
    def _stat(path: str) -> tuple[int, int]:
        st = os.stat(path)
        return st.st_size, st.st_mtime_ns // 1_000_000

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def lookup(
        self,
        path: str,
        config: ExplainConfig,
        *,
        content: Optional[str] = None,
    ) -> Optional[str]:
        """
        Return the cached explanation for `path` under `config`, or None.

        `content` is given for synthetic entries that have no file on disk
        (the codebase-level analyses); they are validated by size and hash
        of the supplied text instead of a stat.
        """
        try:
            record = self._read_record(self.key(path, config))
            if record is None:
                return None

            if content is not None:
                size = len(content.encode("utf-8"))
                if record.file_size == size and record.file_hash == content_hash(content):
                    return record.explanation
                return None

            size, mtime = self._stat(path)
            if record.mtime == mtime and record.file_size == size:
                return record.explanation

            if record.file_size is not None and record.file_size != size:
                return None

            if bytes_hash(self._read_bytes(path)) != record.file_hash:
                return None

            record.mtime = mtime
            record.file_size = size
            self._write_record(record)
            return record.explanation
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Cache read error for %s: %s", path, e)
            return None

    def store(
        self,
        path: str,
        config: ExplainConfig,
        explanation: str,
        *,
        content: Optional[str] = None,
    ) -> None:
        try:
            if content is not None:
                size = len(content.encode("utf-8"))
                mtime = 0
                file_hash = content_hash(content)
            else:
                size, mtime = self._stat(path)
                file_hash = bytes_hash(self._read_bytes(path))

            self._write_record(CacheRecord(
                key=self.key(path, config),
                file_hash=file_hash,
                file_size=size,
                mtime=mtime,
                explanation=explanation,
                config=config.cache_fields(),
            ))
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Cache write error for %s: %s", path, e)

    def stats(self) -> dict:
        try:
            return {"cached_entries": sum(1 for _ in self.cache_dir.glob("*.json"))}
        except OSError:
            return {"cached_entries": 0}
