# loader.py
"""
Workflow loading.

Two front-ends produce the same `Workflow`:

- Python files, run with runpy; they define `workflow()` or `JOBS`
  (see dagrun.dsl).
- YAML files, parsed with yaml.safe_load and validated by the pydantic
  schemas below.
"""
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import dsl
from .errors import DeclarationError
from .model import ArtifactInput, ArtifactOutput, CacheSpec, Job, MatrixSpec, Step, Workflow

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# YAML schema
# ----------------------------------------------------------------------

class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSchema(_Schema):
    name: Optional[str] = None
    run: str
    if_: Optional[str] = Field(None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    cwd: Optional[str] = None


class UploadSchema(_Schema):
    name: str
    path: str
    retention_days: Optional[int] = Field(None, alias="retention-days", ge=1)


class DownloadSchema(_Schema):
    job: str
    name: str
    path: str = "."


class ArtifactsSchema(_Schema):
    upload: List[UploadSchema] = Field(default_factory=list)
    download: List[DownloadSchema] = Field(default_factory=list)


class CacheSchema(_Schema):
    path: str
    key: str
    restore_keys: List[str] = Field(default_factory=list, alias="restore-keys")
    hash_files: List[str] = Field(default_factory=list, alias="hash-files")

    @field_validator("restore_keys", "hash_files", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [line.strip() for line in v.splitlines() if line.strip()]
        return v


class JobSchema(_Schema):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(None, alias="if")
    matrix: Optional[Dict[str, Any]] = None
    steps: List[StepSchema] = Field(..., min_length=1)
    continue_on_error: bool = Field(False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    env: Dict[str, Any] = Field(default_factory=dict)
    artifacts: ArtifactsSchema = Field(default_factory=ArtifactsSchema)
    cache: List[CacheSchema] = Field(default_factory=list)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("matrix")
    @classmethod
    def _matrix_shape(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is None:
            return v
        for axis, values in v.items():
            if axis == "exclude":
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError("matrix.exclude must be a list of mappings")
            elif not isinstance(values, list):
                raise ValueError(f"matrix axis '{axis}' must be a list")
        return v


class WorkflowSchema(_Schema):
    name: str = "workflow"
    on: Optional[Dict[str, List[str]]] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobSchema]

    @field_validator("on", mode="before")
    @classmethod
    def _normalize_on(cls, v: Any) -> Any:
        # on: push | on: [push, pull_request] | on: {push: {branches: [main]}}
        if v is None:
            return None
        if isinstance(v, str):
            return {v: []}
        if isinstance(v, list):
            return {str(e): [] for e in v}
        if isinstance(v, dict):
            out: Dict[str, Any] = {}
            for event, spec in v.items():
                if spec is None:
                    out[event] = []
                elif isinstance(spec, dict):
                    out[event] = spec.get("branches") or []
                else:
                    out[event] = spec
            return out
        return v

    def to_workflow(self) -> Workflow:
        jobs: List[Job] = []
        for job_id, j in self.jobs.items():
            steps = [
                Step(
                    name=s.name or (s.run.strip().splitlines() or ["run"])[0][:60],
                    run=s.run,
                    cwd=s.cwd,
                    condition=s.if_,
                    env={k: str(v) for k, v in s.env.items()},
                )
                for s in j.steps
            ]
            jobs.append(
                Job(
                    name=job_id,
                    steps=steps,
                    needs=list(j.needs),
                    condition=j.if_,
                    matrix=MatrixSpec.coerce(j.matrix),
                    artifact_inputs=[ArtifactInput(job=d.job, name=d.name, path=d.path) for d in j.artifacts.download],
                    artifact_outputs=[
                        ArtifactOutput(name=u.name, path=u.path, retention_days=u.retention_days)
                        for u in j.artifacts.upload
                    ],
                    caches=[
                        CacheSpec(path=c.path, key=c.key, restore_keys=tuple(c.restore_keys),
                                  hash_files=tuple(c.hash_files))
                        for c in j.cache
                    ],
                    continue_on_error=j.continue_on_error,
                    timeout=j.timeout_minutes * 60 if j.timeout_minutes else None,
                    env={k: str(v) for k, v in j.env.items()},
                    display_name=j.name,
                )
            )
        return Workflow(
            name=self.name,
            jobs=jobs,
            on=self.on,
            env={k: str(v) for k, v in self.env.items()},
        )


def parse_yaml(text: str, source: str = "<string>") -> Workflow:
    """Parse and validate a YAML workflow document."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DeclarationError(f"{source}: malformed YAML: {e}") from e
    if not isinstance(raw, dict):
        raise DeclarationError(f"{source}: a workflow must be a mapping")
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in raw and "on" not in raw:
        raw["on"] = raw.pop(True)
    try:
        schema = WorkflowSchema.model_validate(raw)
    except ValidationError as e:
        raise DeclarationError(f"Invalid workflow in {source}: {e}") from e
    return schema.to_workflow()


# ----------------------------------------------------------------------
# Python workflows
# ----------------------------------------------------------------------

def _from_python(wf_path: Path) -> Workflow:
    module_name = f"dagrun_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    declared: Any = None
    fn = globals_dict.get("workflow")
    # `from dagrun import workflow` brings in the helper, not a definition
    if callable(fn) and fn is not dsl.wf:
        declared = fn()
    elif "JOBS" in globals_dict:
        declared = globals_dict["JOBS"]

    if isinstance(declared, Workflow):
        return declared
    if isinstance(declared, list) and all(isinstance(j, Job) for j in declared):
        return Workflow(name=wf_path.stem, jobs=declared)
    raise DeclarationError(
        f"{wf_path.name} must return/define a Workflow or List[Job]. "
        "Define workflow() -> wf(...) or JOBS = [Job, ...]."
    )


def load_workflow(path: Union[str, Path]) -> Workflow:
    """
    Load a workflow from a .py or .yml/.yaml file.

    Raises DeclarationError when the file is missing, of an unknown type,
    or does not describe a workflow.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DeclarationError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _from_python(wf_path)
    if wf_path.suffix in YAML_SUFFIXES:
        return parse_yaml(wf_path.read_text(encoding="utf-8"), source=wf_path.name)
    raise DeclarationError(f"Workflow must be a .py or .yml file, got: {wf_path.name}")
