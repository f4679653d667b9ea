# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


# Process exit codes used by the CLI (see RunResult.exit_code)
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 78       # sysexits EX_CONFIG
EXIT_CANCELLED = 130   # same as an interrupted shell


class DagrunError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Configuration errors (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class ConfigurationError(DagrunError):
    """The declaration (or engine config) cannot be executed as written."""


@dataclass
class CycleError(ConfigurationError):
    cycle: List[str]

    def __str__(self) -> str:
        return f"Dependency cycle detected: {' -> '.join(self.cycle)}"


@dataclass
class UnknownDependencyError(ConfigurationError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        if self.job == self.dependency:
            return f"Job '{self.job}' needs itself"
        return (
            f"Job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {sorted(self.known)}"
        )


@dataclass
class DuplicateIdError(ConfigurationError):
    ids: List[str]

    def __str__(self) -> str:
        return f"Duplicate job names found: {sorted(self.ids)}"


@dataclass
class ConditionError(ConfigurationError):
    expression: str
    message: str

    def __str__(self) -> str:
        return f"Invalid condition {self.expression!r}: {self.message}"


class MatrixError(ConfigurationError):
    """Malformed matrix, or an empty axis under the 'error' policy."""


class ArtifactDeclarationError(ConfigurationError):
    """An artifact input that cannot be satisfied by the job's dependencies."""


class CacheDeclarationError(ConfigurationError):
    """A cache entry without a path or a key."""


class DeclarationError(ConfigurationError):
    """The workflow file could not be loaded or failed schema validation."""


# ----------------------------------------------------------------------
# Job-level errors (local to one instance, turned into outcomes)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(DagrunError):
    job: str
    step: str
    index: int
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step #{self.index} '{self.step}' failed (exit={self.exit_code})"


@dataclass
class ArtifactError(DagrunError):
    key: str
    message: str

    def __str__(self) -> str:
        return f"artifact {self.key}: {self.message}"


class ArtifactNotFound(ArtifactError):
    def __init__(self, key: str):
        super().__init__(key=key, message="not found")


@dataclass
class CacheError(DagrunError):
    key: str
    message: str

    def __str__(self) -> str:
        return f"cache {self.key}: {self.message}"


@dataclass
class JobTimeout(DagrunError):
    instance: str
    seconds: float

    def __str__(self) -> str:
        return f"[{self.instance}] exceeded its time budget of {self.seconds:g}s"


# ----------------------------------------------------------------------
# Engine bugs
# ----------------------------------------------------------------------

@dataclass
class InvalidTransition(DagrunError):
    instance: str
    old: str
    new: str

    def __str__(self) -> str:
        return f"Illegal state change for {self.instance}: {self.old} -> {self.new}"

