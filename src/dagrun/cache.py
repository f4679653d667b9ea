# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import CacheError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Job caches
# ---------------------------------------------------------------------
# Unlike artifacts, cache entries outlive the run that saved them:
#   restore: exact key first, then each restore-key prefix in order
#            (newest matching entry wins)
#   save:    only after the job succeeded, and only when the exact key
#            missed; an existing key is never overwritten
#
# Keys are plain strings built by the runner from the job's template,
# usually with a content hash of the files the cached path depends on.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".dagrun/cache"


@dataclass(frozen=True)
class CacheHit:
    key: str          # what was asked for
    matched: str      # what was restored
    data: bytes

    @property
    def exact(self) -> bool:
        return self.key == self.matched


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


class CacheStore(ABC):
    """
    Blobs keyed by cache key, shared across runs.

    Implementations must be safe to call from several worker threads.
    """

    @abstractmethod
    def load(self, key: str) -> Optional[bytes]:
        """The blob saved under exactly `key`, or None."""

    @abstractmethod
    def save(self, key: str, data: bytes) -> bool:
        """Store `data` unless `key` exists. Returns whether anything was written."""

    @abstractmethod
    def entries(self) -> List[Tuple[str, datetime]]:
        """(key, created_at) of every entry, oldest first."""

    def restore(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheHit]:
        data = self.load(key)
        if data is not None:
            return CacheHit(key=key, matched=key, data=data)
        if not restore_keys:
            return None

        newest_first = list(reversed(sorted(self.entries(), key=lambda e: e[1])))
        for prefix in restore_keys:
            for candidate, _created in newest_first:
                if not candidate.startswith(prefix):
                    continue
                data = self.load(candidate)
                if data is not None:
                    return CacheHit(key=key, matched=candidate, data=data)
        return None


class InMemoryCacheStore(CacheStore):
    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[bytes, datetime]] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
        return entry[0] if entry else None

    def save(self, key: str, data: bytes) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = (bytes(data), datetime.now(timezone.utc))
        return True

    def entries(self) -> List[Tuple[str, datetime]]:
        with self._lock:
            return [(k, created) for k, (_data, created) in self._entries.items()]


class FileCacheStore(CacheStore):
    """
    File-based cache store:
      root/
        <sha256(key)>.bin
        <sha256(key)>.meta.json   (key, size, created_at)
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _paths(self, key: str) -> tuple[Path, Path]:
        stem = _sha256_str(key)
        return self.root / f"{stem}.bin", self.root / f"{stem}.meta.json"

    def load(self, key: str) -> Optional[bytes]:
        blob, meta = self._paths(key)
        if not blob.exists() or not meta.exists():
            return None
        try:
            return blob.read_bytes()
        except OSError as e:
            raise CacheError(key=key, message=f"read failed: {e}") from e

    def save(self, key: str, data: bytes) -> bool:
        blob, meta = self._paths(key)
        tmp = blob.with_suffix(".bin.tmp")
        with self._lock:
            if blob.exists() and meta.exists():
                return False
            try:
                # write to tmp, then atomic rename; the metadata marks the entry complete
                tmp.write_bytes(data)
                tmp.replace(blob)
                meta.write_text(
                    json.dumps(
                        {
                            "key": key,
                            "size": len(data),
                            "created_at": datetime.now(timezone.utc).isoformat(),
                        },
                        sort_keys=True,
                        indent=2,
                    ),
                    encoding="utf-8",
                )
            except OSError as e:
                raise CacheError(key=key, message=f"write failed: {e}") from e
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
        return True

    def entries(self) -> List[Tuple[str, datetime]]:
        found: List[Tuple[str, datetime]] = []
        for meta in sorted(self.root.glob("*.meta.json")):
            try:
                info = json.loads(meta.read_text(encoding="utf-8"))
                found.append((info["key"], datetime.fromisoformat(info["created_at"])))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable cache metadata %s: %s", meta, e)
        found.sort(key=lambda e: e[1])
        return found

    def prune(self, keep: int = 10) -> int:
        """Keep only the newest `keep` entries. Returns how many were removed."""
        keys = [key for key, _created in self.entries()]
        doomed = keys[: max(0, len(keys) - keep)]
        for key in doomed:
            blob, meta = self._paths(key)
            meta.unlink(missing_ok=True)
            blob.unlink(missing_ok=True)
        if doomed:
            logger.info("Pruned %d cache entr%s", len(doomed), "y" if len(doomed) == 1 else "ies")
        return len(doomed)
