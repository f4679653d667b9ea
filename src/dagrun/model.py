# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import EXIT_CANCELLED, EXIT_FAILED, EXIT_OK


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Declaration side (static, built once from the workflow file)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    condition: Any = None            # str expression or conditions.Condition
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ArtifactOutput:
    """Something a job leaves behind for its dependents (path is executor-relative)."""
    name: str                        # may use {matrix.<axis>} placeholders
    path: str
    retention_days: Optional[int] = None


@dataclass(frozen=True)
class ArtifactInput:
    """An artifact produced by `job` that must be materialized before this job runs."""
    job: str
    name: str
    path: str = "."


@dataclass(frozen=True)
class CacheSpec:
    """
    A path kept between runs. Restored before the steps, saved after them.

    `key` may use {matrix.<axis>} and {hash} (digest of `hash_files`).
    When the exact key misses, each `restore_keys` prefix is tried in order
    and the newest entry starting with it is restored.
    """
    path: str
    key: str
    restore_keys: Tuple[str, ...] = ()
    hash_files: Tuple[str, ...] = ()


@dataclass
class MatrixSpec:
    """Ordered axes (axis -> values) plus optional partial bindings to drop."""
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    exclude: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any) -> Optional["MatrixSpec"]:
        if value is None or isinstance(value, MatrixSpec):
            return value
        if isinstance(value, dict):
            axes = dict(value)
            exclude = axes.pop("exclude", None) or []
            return cls(axes=axes, exclude=list(exclude))
        raise TypeError(f"matrix must be a mapping of axis -> values, got {type(value).__name__}")


@dataclass
class Job:
    """
    A CI job: steps + dependencies + activation condition + matrix.

    `name` is the job id and must be unique within a workflow.
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    condition: Any = None            # None means "always run"
    matrix: Optional[MatrixSpec] = None

    artifact_inputs: list[ArtifactInput] = field(default_factory=list)
    artifact_outputs: list[ArtifactOutput] = field(default_factory=list)
    caches: list[CacheSpec] = field(default_factory=list)

    continue_on_error: bool = False
    timeout: Optional[float] = None  # seconds; engine default when None
    env: Dict[str, str] = field(default_factory=dict)
    display_name: Optional[str] = None

    def __post_init__(self) -> None:
        self.matrix = MatrixSpec.coerce(self.matrix)

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass
class Workflow:
    """A named set of jobs plus the events that trigger it."""
    name: str
    jobs: list[Job]
    # event kind -> branch glob patterns ([] = any branch); None = any event
    on: Optional[Dict[str, List[str]]] = None
    env: Dict[str, str] = field(default_factory=dict)

    def is_triggered_by(self, context: "RunContext") -> bool:
        if self.on is None:
            return True
        if context.event not in self.on:
            return False
        patterns = self.on[context.event] or []
        if not patterns:
            return True
        target = context.branch or context.ref
        return any(fnmatch(target, p) for p in patterns)


# ---------------------------------------------------------------------
# Run context (immutable facts about why this run exists)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RunContext:
    event: str
    ref: str = ""
    sha: str = ""
    actor: str = ""
    pr_title: Optional[str] = None
    pr_labels: Tuple[str, ...] = ()
    inputs: Mapping[str, str] = field(default_factory=dict)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        # freeze the mutable bits so conditions can never change them
        object.__setattr__(self, "pr_labels", tuple(self.pr_labels))
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))

    @property
    def branch(self) -> str:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref.startswith("refs/"):
            return ""
        return self.ref

    @property
    def tag(self) -> Optional[str]:
        if self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return None


# ---------------------------------------------------------------------
# Runtime side
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    """Status of one job instance inside a run."""

    PENDING = "pending"
    """Created, not looked at by the scheduler yet."""

    BLOCKED = "blocked"
    """Waiting for dependency instances to finish."""

    READY = "ready"
    """Dependencies settled and condition true; waiting for a worker slot."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    SKIPPED = "skipped"
    """Condition evaluated false, or a dependency was skipped."""

    CANCELLED = "cancelled"
    """Upstream failure or run abort."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

# Legal forward moves; anything else is an engine bug.
TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.BLOCKED, JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED}
    ),
    JobStatus.BLOCKED: frozenset({JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}),
}


@dataclass(frozen=True)
class MatrixBinding:
    """One concrete point of a matrix expansion."""
    index: int
    values: Dict[str, Any] = field(default_factory=dict)

    def label(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.values.items())

    def env(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for axis, value in self.values.items():
            key = "".join(c if c.isalnum() else "_" for c in str(axis)).upper()
            out[f"MATRIX_{key}"] = str(value)
        return out

    def render(self, template: str) -> str:
        """Substitute {matrix.<axis>} placeholders."""
        out = template
        for axis, value in self.values.items():
            out = out.replace("{matrix.%s}" % axis, str(value))
        return out


@dataclass
class JobInstance:
    """One row of the run's instance table (indexed by `index`)."""
    index: int
    job: str
    binding: Optional[MatrixBinding] = None
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    outcome: Optional["JobOutcome"] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        if self.binding is None:
            return self.job
        return f"{self.job}[{self.binding.index}]"

    @property
    def label(self) -> str:
        if self.binding is None or not self.binding.values:
            return self.id
        return f"{self.job} ({self.binding.label()})"

    @property
    def suffix(self) -> str:
        """Filesystem-friendly per-instance name."""
        if self.binding is None:
            return self.job
        return f"{self.job}-{self.binding.index}"

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class OutcomeReason(str, Enum):
    OK = "ok"
    STEP_FAILED = "step_failed"
    EXECUTOR_ERROR = "executor_error"
    ARTIFACT_ERROR = "artifact_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class StepRecord:
    name: str
    index: int
    status: str                      # succeeded | failed | skipped
    exit_code: Optional[int] = None
    duration: float = 0.0
    output: str = ""


@dataclass
class JobOutcome:
    """What the Job Runner reports back for one instance."""
    status: JobStatus
    reason: OutcomeReason = OutcomeReason.OK
    message: str = ""
    failed_step: Optional[int] = None
    exit_code: Optional[int] = None
    steps: List[StepRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    cache_hits: Dict[str, str] = field(default_factory=dict)   # path -> restored key

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.SUCCEEDED


@dataclass(frozen=True)
class TransitionEvent:
    instance_id: str
    old: JobStatus
    new: JobStatus
    timestamp: datetime
    reason: Optional[str] = None


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_TRIGGERED = "not_triggered"


@dataclass
class InstanceResult:
    instance_id: str
    job: str
    binding: Dict[str, Any]
    status: JobStatus
    reason: Optional[str] = None
    outcome: Optional[JobOutcome] = None


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    instances: List[InstanceResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.instances:
            out[r.status.value] = out.get(r.status.value, 0) + 1
        return out

    def for_job(self, job: str) -> List[InstanceResult]:
        return [r for r in self.instances if r.job == job]

    def status_of(self, instance_id: str) -> JobStatus:
        for r in self.instances:
            if r.instance_id == instance_id:
                return r.status
        raise KeyError(instance_id)

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.FAILED:
            return EXIT_FAILED
        if self.status == RunStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_OK
