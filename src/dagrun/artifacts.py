# artifacts.py
from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import redis

from .errors import ArtifactError, ArtifactNotFound

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".dagrun/artifacts"
DEFAULT_RETENTION_DAYS = 30


@dataclass(frozen=True)
class ArtifactKey:
    """Artifacts are namespaced by run and by the producing job instance."""
    run_id: str
    instance_id: str
    name: str

    def __str__(self) -> str:
        return f"{self.run_id}/{self.instance_id}/{self.name}"


@dataclass
class ArtifactRecord:
    key: ArtifactKey
    data: bytes
    retention_days: int = DEFAULT_RETENTION_DAYS
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(days=self.retention_days)


class ArtifactStore(ABC):
    """
    Blob store shared by all job runners of a run.

    Implementations must be safe to call from several worker threads.
    Retention is a TTL contract owned by the store; the engine only passes
    retention_days along.
    """

    @abstractmethod
    def put(self, key: ArtifactKey, data: bytes, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        """Store `data` under `key`. Raises ArtifactError on failure."""

    @abstractmethod
    def get(self, key: ArtifactKey) -> bytes:
        """Return the blob. Raises ArtifactNotFound / ArtifactError."""

    def exists(self, key: ArtifactKey) -> bool:
        try:
            self.get(key)
        except ArtifactNotFound:
            return False
        return True

    @abstractmethod
    def delete_run(self, run_id: str) -> int:
        """Drop every artifact of a run. Returns how many were removed."""


# ---------------------------------------------------------------------
# In-memory (tests, single-process runs)
# ---------------------------------------------------------------------

class InMemoryArtifactStore(ArtifactStore):
    def __init__(self) -> None:
        self._records: Dict[ArtifactKey, ArtifactRecord] = {}
        self._lock = threading.Lock()

    def put(self, key: ArtifactKey, data: bytes, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        with self._lock:
            self._records[key] = ArtifactRecord(key=key, data=bytes(data), retention_days=retention_days)

    def get(self, key: ArtifactKey) -> bytes:
        with self._lock:
            rec = self._records.get(key)
        if rec is None:
            raise ArtifactNotFound(str(key))
        return rec.data

    def record(self, key: ArtifactKey) -> ArtifactRecord:
        with self._lock:
            rec = self._records.get(key)
        if rec is None:
            raise ArtifactNotFound(str(key))
        return rec

    def keys(self) -> List[ArtifactKey]:
        with self._lock:
            return sorted(self._records, key=str)

    def delete_run(self, run_id: str) -> int:
        with self._lock:
            doomed = [k for k in self._records if k.run_id == run_id]
            for k in doomed:
                del self._records[k]
        return len(doomed)


# ---------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------

_UNSAFE = re.compile(r"[^A-Za-z0-9._\-\[\]]")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", part) or "_"


class FileArtifactStore(ArtifactStore):
    """
    File-based artifact store:
      root/
        <run_id>/
          <instance_id>/
            <name>.bin
            <name>.meta.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: ArtifactKey) -> tuple[Path, Path]:
        d = self.root / _safe(key.run_id) / _safe(key.instance_id)
        stem = _safe(key.name)
        return d / f"{stem}.bin", d / f"{stem}.meta.json"

    def put(self, key: ArtifactKey, data: bytes, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        blob, meta = self._paths(key)
        tmp = blob.with_suffix(".bin.tmp")
        try:
            blob.parent.mkdir(parents=True, exist_ok=True)
            # write to tmp, then atomic rename
            tmp.write_bytes(data)
            tmp.replace(blob)
            meta.write_text(
                json.dumps(
                    {
                        "key": str(key),
                        "size": len(data),
                        "retention_days": retention_days,
                        "created_at": datetime.now(timezone.utc).isoformat(),
                    },
                    sort_keys=True,
                    indent=2,
                ),
                encoding="utf-8",
            )
        except OSError as e:
            raise ArtifactError(key=str(key), message=f"write failed: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def get(self, key: ArtifactKey) -> bytes:
        blob, _meta = self._paths(key)
        if not blob.exists():
            raise ArtifactNotFound(str(key))
        try:
            return blob.read_bytes()
        except OSError as e:
            raise ArtifactError(key=str(key), message=f"read failed: {e}") from e

    def delete_run(self, run_id: str) -> int:
        d = self.root / _safe(run_id)
        if not d.exists():
            return 0
        count = len(list(d.rglob("*.bin")))
        shutil.rmtree(d, ignore_errors=True)
        return count

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete artifacts whose retention has elapsed. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        removed = 0
        for meta in sorted(self.root.rglob("*.meta.json")):
            try:
                info = json.loads(meta.read_text(encoding="utf-8"))
                created = datetime.fromisoformat(info["created_at"])
                days = int(info.get("retention_days", DEFAULT_RETENTION_DAYS))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Skipping unreadable artifact metadata %s: %s", meta, e)
                continue
            if created + timedelta(days=days) <= now:
                blob = meta.with_name(meta.name[: -len(".meta.json")] + ".bin")
                blob.unlink(missing_ok=True)
                meta.unlink(missing_ok=True)
                removed += 1
        return removed


# ---------------------------------------------------------------------
# Redis (retention enforced by key TTL)
# ---------------------------------------------------------------------

class RedisArtifactStore(ArtifactStore):
    def __init__(
        self,
        url: str | None = None,
        *,
        client: "redis.Redis | None" = None,
        prefix: str = "dagrun:artifact",
    ):
        if client is None:
            if not url:
                raise ValueError("RedisArtifactStore needs a url or a client")
            client = redis.Redis.from_url(url)
        self.r = client
        self.prefix = prefix

    def _key(self, key: ArtifactKey) -> str:
        return f"{self.prefix}:{key.run_id}:{key.instance_id}:{key.name}"

    def put(self, key: ArtifactKey, data: bytes, retention_days: int = DEFAULT_RETENTION_DAYS) -> None:
        try:
            self.r.set(self._key(key), data, ex=int(timedelta(days=retention_days).total_seconds()))
        except redis.RedisError as e:
            raise ArtifactError(key=str(key), message=f"redis put failed: {e}") from e

    def get(self, key: ArtifactKey) -> bytes:
        try:
            data = self.r.get(self._key(key))
        except redis.RedisError as e:
            raise ArtifactError(key=str(key), message=f"redis get failed: {e}") from e
        if data is None:
            raise ArtifactNotFound(str(key))
        return data if isinstance(data, bytes) else str(data).encode("utf-8")

    def delete_run(self, run_id: str) -> int:
        try:
            doomed = list(self.r.scan_iter(match=f"{self.prefix}:{run_id}:*"))
            if doomed:
                self.r.delete(*doomed)
        except redis.RedisError as e:
            raise ArtifactError(key=run_id, message=f"redis delete failed: {e}") from e
        return len(doomed)
