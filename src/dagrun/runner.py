# runner.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from . import conditions
from .artifacts import ArtifactKey, ArtifactStore, DEFAULT_RETENTION_DAYS
from .cache import CacheStore
from .dag import JobGraph
from .errors import ArtifactError, CacheError, JobTimeout, StepFailure
from .executor import StepExecutor
from .model import (
    CacheSpec,
    Job,
    JobInstance,
    JobOutcome,
    JobStatus,
    OutcomeReason,
    RunContext,
    Step,
    StepRecord,
)

logger = logging.getLogger(__name__)

OUTPUT_CHARS = 4000


@dataclass
class ResolvedInput:
    """An artifact fetched from the store, ready to be materialized."""
    path: str
    data: bytes
    key: str


@dataclass
class _CacheSlot:
    spec: CacheSpec
    key: str
    restored: Optional[str] = None

    @property
    def exact(self) -> bool:
        return self.restored == self.key


class JobRunner:
    """
    Runs one job instance: materialize inputs, restore caches, run steps in
    order, upload outputs, save caches.

    Never raises for job-level problems; everything ends up in a JobOutcome.
    """

    def __init__(
        self,
        graph: JobGraph,
        context: RunContext,
        executor: StepExecutor,
        store: ArtifactStore,
        *,
        workflow_env: Optional[Mapping[str, str]] = None,
        default_timeout: float = 21600.0,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        cache: Optional[CacheStore] = None,
    ):
        self.graph = graph
        self.context = context
        self.executor = executor
        self.store = store
        self.cache = cache
        self.workflow_env = dict(workflow_env or {})
        self.default_timeout = default_timeout
        self.retention_days = retention_days

    def budget(self, instance: JobInstance) -> float:
        job = self.graph.jobs[instance.job]
        return float(job.timeout or self.default_timeout)

    # ------------------------------------------------------------------
    # inputs
    # ------------------------------------------------------------------

    def fetch_inputs(
        self,
        instance: JobInstance,
        producers: Mapping[str, Sequence[JobInstance]],
    ) -> Tuple[List[ResolvedInput], List[str]]:
        """
        Fetch every declared input from the store.

        Returns (inputs, warnings). Raises ArtifactError when a producer that
        succeeded has no such artifact or the store fails.
        """
        job = self.graph.jobs[instance.job]
        resolved: List[ResolvedInput] = []
        warnings: List[str] = []

        for inp in job.artifact_inputs:
            ran = [p for p in producers.get(inp.job, ()) if p.status == JobStatus.SUCCEEDED]
            if not ran:
                msg = f"artifact '{inp.name}' from '{inp.job}' is unavailable (producer did not run)"
                logger.warning("[%s] %s", instance.id, msg)
                warnings.append(msg)
                continue
            for p in ran:
                name = p.binding.render(inp.name) if p.binding else inp.name
                key = ArtifactKey(self.context.run_id, p.id, name)
                data = self.store.get(key)
                path = inp.path if p.binding is None else f"{inp.path.rstrip('/')}/{p.suffix}"
                resolved.append(ResolvedInput(path=path, data=data, key=str(key)))
        return resolved, warnings

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def execute(
        self,
        instance: JobInstance,
        stop: threading.Event,
        producers: Optional[Mapping[str, Sequence[JobInstance]]] = None,
    ) -> JobOutcome:
        """fetch_inputs + run; a store failure fails the instance before any step runs."""
        try:
            inputs, warnings = self.fetch_inputs(instance, producers or {})
        except ArtifactError as e:
            logger.error("[%s] could not fetch inputs: %s", instance.id, e)
            return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.ARTIFACT_ERROR, message=str(e))
        return self.run(instance, inputs, stop, warnings=warnings)

    def run(
        self,
        instance: JobInstance,
        inputs: Sequence[ResolvedInput],
        stop: Optional[threading.Event] = None,
        *,
        warnings: Optional[List[str]] = None,
    ) -> JobOutcome:
        job = self.graph.jobs[instance.job]
        stop = stop or threading.Event()
        budget = self.budget(instance)
        deadline = time.monotonic() + budget
        warnings = list(warnings or [])
        records: List[StepRecord] = []

        if stop.is_set():
            return self._cancelled(records, warnings)

        for inp in inputs:
            try:
                self.executor.materialize(inp.path, inp.data)
            except (ArtifactError, OSError, ValueError) as e:
                msg = f"could not materialize {inp.key} at {inp.path}: {e}"
                logger.error("[%s] %s", instance.id, msg)
                return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.ARTIFACT_ERROR,
                                  message=msg, warnings=warnings)

        caches = self.restore_caches(instance, warnings)

        for idx, step in enumerate(job.steps):
            if stop.is_set():
                self._skip_rest(job, idx, records)
                return self._cancelled(records, warnings)

            if step.condition is not None and not conditions.evaluate(step.condition, self.context):
                records.append(StepRecord(name=step.name, index=idx, status="skipped"))
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._skip_rest(job, idx, records)
                return self._timeout(instance, budget, records, warnings)

            logger.info("[%s] step %d/%d: %s", instance.id, idx + 1, len(job.steps), step.name)
            started = time.monotonic()
            try:
                res = self.executor.execute(
                    step.run,
                    self.step_env(job, step, instance),
                    remaining,
                    stop,
                    cwd=step.cwd,
                )
            except Exception as e:
                logger.exception("[%s] executor error in step '%s'", instance.id, step.name)
                records.append(StepRecord(name=step.name, index=idx, status="failed",
                                          duration=time.monotonic() - started, output=str(e)))
                if job.continue_on_error:
                    warnings.append(f"step #{idx} '{step.name}' errored: {e}")
                    continue
                self._skip_rest(job, idx + 1, records)
                return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.EXECUTOR_ERROR,
                                  message=f"step '{step.name}': {e}", failed_step=idx,
                                  steps=records, warnings=warnings)

            output = res.output.decode("utf-8", errors="replace")[-OUTPUT_CHARS:]
            record = StepRecord(name=step.name, index=idx, status="succeeded", exit_code=res.exit_code,
                                duration=time.monotonic() - started, output=output)
            records.append(record)

            if res.timed_out or time.monotonic() >= deadline:
                record.status = "failed"
                self._skip_rest(job, idx + 1, records)
                return self._timeout(instance, budget, records, warnings, failed_step=idx)
            if res.stopped:
                record.status = "failed"
                self._skip_rest(job, idx + 1, records)
                return self._cancelled(records, warnings)

            if res.exit_code != 0:
                record.status = "failed"
                failure = StepFailure(job=instance.id, step=step.name, index=idx, exit_code=res.exit_code)
                if job.continue_on_error:
                    logger.warning("%s (continue_on_error)", failure)
                    warnings.append(str(failure))
                    continue
                logger.info("%s", failure)
                self._skip_rest(job, idx + 1, records)
                return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.STEP_FAILED,
                                  message=str(failure), failed_step=idx, exit_code=res.exit_code,
                                  steps=records, warnings=warnings)

        if stop.is_set():
            return self._cancelled(records, warnings)

        # ---- upload outputs (a failed put fails the job) ----
        uploaded: List[str] = []
        for out in job.artifact_outputs:
            name = instance.binding.render(out.name) if instance.binding else out.name
            key = ArtifactKey(self.context.run_id, instance.id, name)
            try:
                data = self.executor.collect(out.path)
                self.store.put(key, data, out.retention_days or self.retention_days)
            except (ArtifactError, OSError) as e:
                msg = f"upload of {key} failed: {e}"
                logger.error("[%s] %s", instance.id, msg)
                return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.ARTIFACT_ERROR,
                                  message=msg, steps=records, warnings=warnings, artifacts=uploaded)
            uploaded.append(str(key))

        self.save_caches(instance, caches, warnings)
        return JobOutcome(status=JobStatus.SUCCEEDED, steps=records, warnings=warnings, artifacts=uploaded,
                          cache_hits={c.spec.path: c.restored for c in caches if c.restored})

    # ------------------------------------------------------------------
    # caches (best effort: problems become warnings, never failures)
    # ------------------------------------------------------------------

    def cache_key(self, instance: JobInstance, template: str, digest: Optional[str] = None) -> str:
        out = instance.binding.render(template) if instance.binding else template
        if digest is not None:
            out = out.replace("{hash}", digest)
        return out

    def restore_caches(self, instance: JobInstance, warnings: List[str]) -> List[_CacheSlot]:
        job = self.graph.jobs[instance.job]
        if not job.caches:
            return []
        if self.cache is None:
            warnings.append("job declares caches but no cache store is configured")
            return []

        slots: List[_CacheSlot] = []
        for spec in job.caches:
            try:
                templates = (spec.key, *spec.restore_keys)
                digest = self.executor.fingerprint(spec.hash_files) if any("{hash}" in t for t in templates) else None
                slot = _CacheSlot(spec=spec, key=self.cache_key(instance, spec.key, digest))
                slots.append(slot)
                prefixes = [self.cache_key(instance, k, digest) for k in spec.restore_keys]
                hit = self.cache.restore(slot.key, prefixes)
                if hit is None:
                    logger.info("[%s] cache miss: %s", instance.id, slot.key)
                    continue
                self.executor.materialize(spec.path, hit.data)
                slot.restored = hit.matched
                logger.info("[%s] cache %s: restored %s into %s",
                            instance.id, "hit" if hit.exact else "partial hit", hit.matched, spec.path)
            except (CacheError, ArtifactError, OSError, ValueError) as e:
                msg = f"cache restore for '{spec.path}' failed: {e}"
                logger.warning("[%s] %s", instance.id, msg)
                warnings.append(msg)
        return slots

    def save_caches(self, instance: JobInstance, slots: Sequence[_CacheSlot], warnings: List[str]) -> None:
        for slot in slots:
            if slot.exact or self.cache is None:
                continue
            try:
                data = self.executor.collect(slot.spec.path)
                if self.cache.save(slot.key, data):
                    logger.info("[%s] cache saved: %s", instance.id, slot.key)
            except (CacheError, ArtifactError, OSError) as e:
                msg = f"cache save of '{slot.key}' failed: {e}"
                logger.warning("[%s] %s", instance.id, msg)
                warnings.append(msg)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def step_env(self, job: Job, step: Step, instance: JobInstance) -> Dict[str, str]:
        env: Dict[str, str] = {}
        env.update(self.workflow_env)
        env.update(job.env)
        env.update(step.env)
        if instance.binding is not None:
            env.update(instance.binding.env())
        env.update({
            "DAGRUN_RUN_ID": self.context.run_id,
            "DAGRUN_JOB": job.name,
            "DAGRUN_INSTANCE": instance.id,
            "DAGRUN_EVENT": self.context.event,
            "DAGRUN_REF": self.context.ref,
            "DAGRUN_SHA": self.context.sha,
        })
        return {k: str(v) for k, v in env.items()}

    @staticmethod
    def _skip_rest(job: Job, start: int, records: List[StepRecord]) -> None:
        for i in range(start, len(job.steps)):
            records.append(StepRecord(name=job.steps[i].name, index=i, status="skipped"))

    @staticmethod
    def _cancelled(records: List[StepRecord], warnings: List[str]) -> JobOutcome:
        return JobOutcome(status=JobStatus.CANCELLED, reason=OutcomeReason.CANCELLED,
                          message="stopped", steps=records, warnings=warnings)

    @staticmethod
    def _timeout(
        instance: JobInstance,
        budget: float,
        records: List[StepRecord],
        warnings: List[str],
        failed_step: Optional[int] = None,
    ) -> JobOutcome:
        err = JobTimeout(instance=instance.id, seconds=budget)
        logger.warning("%s", err)
        return JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.TIMEOUT, message=str(err),
                          failed_step=failed_step, steps=records, warnings=warnings)
