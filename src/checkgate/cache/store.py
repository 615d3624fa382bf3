"""Content-addressed store for check environments.

An entry maps a key (tool identity plus the hash of the files that
define its environment) to an artifact directory. Editing a lockfile
or hook config changes the key, which is the only invalidation.

Layout under the cache root::

    <key>/artifact/     what the builder produced
    <key>/entry.json    written last; its presence marks a valid entry
"""

from __future__ import annotations

import hashlib
import re
import shutil
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from checkgate.core.errors import CacheBuildError
from checkgate.core.log import logger

ENTRY_FILE = "entry.json"
ARTIFACT_DIR = "artifact"
_MISSING = b"<missing>"


class CacheEntry(BaseModel):
    """A reusable environment artifact."""

    model_config = ConfigDict(frozen=True)

    key: str
    tool: str
    location: Path
    created_at: datetime
    last_used: datetime


def cache_key(
    tool: str,
    inputs: Iterable[str | Path],
    root: Path,
    extra: Iterable[str] = (),
) -> str:
    """Derive a cache key from declared inputs.

    Pure and deterministic: the same tool, extra identity strings and
    input file contents always give the same key. Inputs are hashed
    in sorted order, relative to ``root``. A missing input hashes as
    a fixed marker, so creating it later changes the key.
    """
    digest = hashlib.sha256()
    digest.update(tool.encode())
    digest.update(b"\0")
    for item in extra:
        digest.update(item.encode())
        digest.update(b"\0")
    for name in sorted({str(i) for i in inputs}):
        digest.update(name.encode())
        digest.update(b"\0")
        path = Path(root) / name
        if path.is_file():
            digest.update(hashlib.sha256(path.read_bytes()).digest())
        else:
            digest.update(_MISSING)
        digest.update(b"\0")
    prefix = re.sub(r"[^A-Za-z0-9_.-]", "_", tool) or "tool"
    return f"{prefix}-{digest.hexdigest()[:24]}"


class _Build:
    """An in-flight build other callers can wait on."""

    def __init__(self):
        self.done = threading.Event()
        self.entry: CacheEntry | None = None
        self.error: CacheBuildError | None = None


class CacheStore:
    """Key/value store of environment artifacts.

    Thread safe within a process: concurrent get_or_build calls for
    one key run the builder once; the others wait for it. Calls for
    different keys never wait on each other.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()
        self._inflight: dict[str, _Build] = {}

    def _dir(self, key: str) -> Path:
        return self.root / key

    def _load(self, key: str) -> CacheEntry | None:
        entry_file = self._dir(key) / ENTRY_FILE
        if not entry_file.is_file():
            return None
        try:
            entry = CacheEntry.model_validate_json(
                entry_file.read_text(encoding="utf-8")
            )
        except (ValidationError, OSError) as e:
            logger.warn("Ignoring unreadable cache entry", key=key,
                        error=str(e))
            return None
        if not entry.location.exists():
            return None
        return entry

    def _write(self, entry: CacheEntry) -> None:
        path = self._dir(entry.key) / ENTRY_FILE
        tmp = path.with_suffix(".tmp")
        tmp.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def _touch(self, entry: CacheEntry) -> CacheEntry:
        entry = entry.model_copy(update={"last_used": datetime.now()})
        try:
            self._write(entry)
        except OSError as e:
            # A read-only cache still serves hits; only LRU order suffers
            logger.debug("Could not record cache use", key=entry.key,
                         error=str(e))
        return entry

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for key without building."""
        with self._lock:
            return self._load(key)

    def get_or_build(
        self,
        key: str,
        builder: Callable[[Path], object],
        tool: str | None = None,
    ) -> CacheEntry:
        """Return the entry for key, building it on a miss.

        Args:
            key: Cache key from cache_key()
            builder: Called with the artifact directory to populate.
                Not called on a hit.
            tool: Tool name recorded on the entry

        Raises:
            CacheBuildError: If the builder raised or the entry could
                not be written. Nothing is stored
                and later calls will try again.
        """
        with self._lock:
            entry = self._load(key)
            if entry is not None:
                logger.debug("Cache hit", key=key)
                return self._touch(entry)
            build = self._inflight.get(key)
            owner = build is None
            if owner:
                build = _Build()
                self._inflight[key] = build

        if not owner:
            logger.debug("Waiting for in-flight cache build", key=key)
            build.done.wait()
            if build.error is not None:
                raise build.error
            return build.entry

        try:
            build.entry = self._build(key, builder, tool or key)
            return build.entry
        except CacheBuildError as e:
            build.error = e
            raise
        except Exception as e:
            build.error = CacheBuildError(key, e)
            raise build.error from e
        finally:
            with self._lock:
                del self._inflight[key]
            build.done.set()

    def _build(
        self, key: str, builder: Callable[[Path], object], tool: str
    ) -> CacheEntry:
        entry_dir = self._dir(key)
        location = entry_dir / ARTIFACT_DIR
        try:
            shutil.rmtree(entry_dir, ignore_errors=True)
            location.mkdir(parents=True)
        except OSError as e:
            logger.error("Cannot create cache entry", key=key, error=str(e))
            raise CacheBuildError(key, e) from e

        with logger.span("Building cache entry", key=key, tool=tool):
            try:
                builder(location)
            except Exception as e:
                shutil.rmtree(entry_dir, ignore_errors=True)
                logger.error("Cache build failed", key=key, error=str(e))
                raise CacheBuildError(key, e) from e

        now = datetime.now()
        entry = CacheEntry(
            key=key, tool=tool, location=location,
            created_at=now, last_used=now,
        )
        try:
            self._write(entry)
        except OSError as e:
            shutil.rmtree(entry_dir, ignore_errors=True)
            raise CacheBuildError(key, e) from e
        logger.info("Cache entry stored", key=key)
        return entry

    def entries(self) -> list[CacheEntry]:
        """All valid entries, most recently used first."""
        if not self.root.is_dir():
            return []
        with self._lock:
            found = [
                entry for child in self.root.iterdir()
                if child.is_dir() and (entry := self._load(child.name))
            ]
        return sorted(found, key=lambda e: e.last_used, reverse=True)

    def prune(self, max_entries: int) -> list[str]:
        """Remove least recently used entries beyond max_entries.

        Returns:
            Keys that were removed
        """
        removed = [e.key for e in self.entries()[max_entries:]]
        with self._lock:
            for key in removed:
                if key not in self._inflight:
                    shutil.rmtree(self._dir(key), ignore_errors=True)
        if removed:
            logger.info(f"Pruned {len(removed)} cache entries")
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = len(self.entries())
        with self._lock:
            if self.root.is_dir():
                for child in self.root.iterdir():
                    if child.name not in self._inflight:
                        shutil.rmtree(child, ignore_errors=True)
        return count


__all__ = ["CacheEntry", "CacheStore", "cache_key"]
