# src/dagrun/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import ArtifactInput, ArtifactOutput, CacheSpec, Job, MatrixSpec, Step, Workflow


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    when: Any = None,
    env: Optional[Dict[str, Any]] = None,
) -> Step:
    """Create a shell step. `when` is an optional condition (string or node)."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        condition=when,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Matrix / artifacts / triggers
# ---------------------------------------------------------------------

def matrix(
    key: Optional[str] = None,
    values: Optional[Iterable[Any]] = None,
    *,
    exclude: Optional[Sequence[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Build a matrix spec. Axes keep the order they are given in.

        matrix("py", ["3.11", "3.12"])
        matrix(os=["linux", "mac"], py=["3.11", "3.12"], exclude=[{"os": "mac", "py": "3.11"}])
    """
    ordered: Dict[str, List[Any]] = {}
    if key is not None:
        ordered[key] = list(values or [])
    for name, vals in axes.items():
        ordered[name] = list(vals)
    return MatrixSpec(axes=ordered, exclude=[dict(e) for e in (exclude or [])])


def upload(name: str, path: str, *, retention_days: Optional[int] = None) -> ArtifactOutput:
    return ArtifactOutput(name=name, path=path, retention_days=retention_days)


def download(job: str, name: str, path: str = ".") -> ArtifactInput:
    return ArtifactInput(job=job, name=name, path=path)


def cache(
    path: str,
    key: str,
    *,
    restore_keys: Sequence[str] = (),
    hash_files: Sequence[str] = (),
) -> CacheSpec:
    """
    Keep `path` between runs.

        cache(".cache/pip", "pip-{matrix.py}-{hash}", restore_keys=["pip-{matrix.py}-"],
              hash_files=["requirements*.txt"])
    """
    return CacheSpec(path=path, key=key, restore_keys=tuple(restore_keys), hash_files=tuple(hash_files))


def on(**events: Optional[Iterable[str]]) -> Dict[str, List[str]]:
    """on(push=["main", "develop"], pull_request=[]) -> trigger map ([] = any branch)."""
    return {event: list(branches or []) for event, branches in events.items()}


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    when: Any = None,
    matrix: Optional[MatrixSpec | Dict[str, Any]] = None,
    uploads: Optional[List[ArtifactOutput]] = None,
    downloads: Optional[List[ArtifactInput]] = None,
    caches: Optional[List[CacheSpec]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, Any]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    title: Optional[str] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=when,
        matrix=matrix,
        artifact_inputs=list(downloads or []),
        artifact_outputs=list(uploads or []),
        caches=list(caches or []),
        continue_on_error=continue_on_error,
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
        display_name=title,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: Any = None
        self._axes: dict[str, list[Any]] = {}
        self._exclude: list[dict[str, Any]] = []
        self._uploads: list[ArtifactOutput] = []
        self._downloads: list[ArtifactInput] = []
        self._caches: list[CacheSpec] = []
        self._continue_on_error = False
        self._timeout: Optional[float] = None
        self._title: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, when: Any = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, condition=when))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def when(self, condition: Any):
        self._condition = condition
        return self

    def over(self, axis: str, values: Iterable[Any]):
        self._axes[axis] = list(values)
        return self

    def excluding(self, **binding: Any):
        self._exclude.append(binding)
        return self

    def uploads(self, name: str, path: str, retention_days: Optional[int] = None):
        self._uploads.append(upload(name, path, retention_days=retention_days))
        return self

    def downloads(self, job_name: str, name: str, path: str = "."):
        self._downloads.append(download(job_name, name, path))
        return self

    def caches(self, path: str, key: str, *, restore_keys: Sequence[str] = (), hash_files: Sequence[str] = ()):
        self._caches.append(cache(path, key, restore_keys=restore_keys, hash_files=hash_files))
        return self

    def tolerate_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def titled(self, title: str):
        self._title = title
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        spec = MatrixSpec(axes=dict(self._axes), exclude=list(self._exclude)) if self._axes else None
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            matrix=spec,
            artifact_inputs=list(self._downloads),
            artifact_outputs=list(self._uploads),
            caches=list(self._caches),
            continue_on_error=self._continue_on_error,
            timeout=self._timeout,
            env=dict(self._env),
            display_name=self._title,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "workflow",
    on: Optional[Dict[str, List[str]]] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

        from dagrun import wf, job, sh, on

        def workflow():
            return wf(
                job("build", sh("compile", "make")),
                job("test", sh("unit", "make test"), needs=["build"]),
                name="ci",
                on=on(push=["main"]),
            )
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        on=on,
        env={k: str(v) for k, v in (env or {}).items()},
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
