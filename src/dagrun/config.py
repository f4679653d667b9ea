# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from .artifacts import DEFAULT_ARTIFACT_DIR, DEFAULT_RETENTION_DAYS
from .cache import DEFAULT_CACHE_DIR
from .errors import ConfigurationError
from .matrix import EmptyAxisPolicy

ENV_PREFIX = "DAGRUN_"


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineConfig:
    """Knobs for one engine instance. Scoped to a run; never global."""
    max_workers: int = 0                     # 0 -> default_workers()
    job_timeout: float = 21600.0             # seconds per job instance (6h)
    cancel_grace: float = 10.0               # seconds to wait for stopped workers
    poll_interval: float = 0.1
    empty_matrix: EmptyAxisPolicy = EmptyAxisPolicy.WARN
    retention_days: int = DEFAULT_RETENTION_DAYS
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    cache_dir: str = DEFAULT_CACHE_DIR
    redis_url: Optional[str] = None
    stop_on_failure: bool = False
    workspace: str = "."

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "empty_matrix", EmptyAxisPolicy(self.empty_matrix))
        except ValueError as e:
            raise ConfigurationError(
                f"empty_matrix must be one of {[p.value for p in EmptyAxisPolicy]}, got {self.empty_matrix!r}"
            ) from e
        if self.max_workers < 0:
            raise ConfigurationError(f"max_workers must be >= 0, got {self.max_workers}")
        if self.job_timeout <= 0:
            raise ConfigurationError(f"job_timeout must be positive, got {self.job_timeout}")
        if self.cancel_grace < 0 or self.poll_interval <= 0:
            raise ConfigurationError("cancel_grace must be >= 0 and poll_interval > 0")
        if self.retention_days < 1:
            raise ConfigurationError(f"retention_days must be >= 1, got {self.retention_days}")

    @property
    def workers(self) -> int:
        return self.max_workers or default_workers()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        """
        Read DAGRUN_* variables, e.g. DAGRUN_MAX_WORKERS=4,
        DAGRUN_STOP_ON_FAILURE=true, DAGRUN_REDIS_URL=redis://...
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _convert(f.name, raw, f.default)
        return cls(**values)

    def merged(self, **overrides: Any) -> "EngineConfig":
        """Apply overrides that are not None (CLI options)."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean)


def _convert(name: str, raw: str, default: Any) -> Any:
    try:
        if isinstance(default, bool):
            if raw.lower() in ("1", "true", "yes", "on"):
                return True
            if raw.lower() in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name.upper()}: invalid value {raw!r}") from e
    return raw
