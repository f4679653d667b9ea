# controller.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence, Union

from .artifacts import ArtifactStore, FileArtifactStore, RedisArtifactStore
from .cache import CacheStore, FileCacheStore
from .config import EngineConfig
from .dag import JobGraph
from .executor import ShellStepExecutor, StepExecutor
from .model import (
    InstanceResult,
    Job,
    JobInstance,
    JobStatus,
    RunContext,
    RunResult,
    RunStatus,
    Workflow,
    utcnow,
)
from .runner import JobRunner
from .scheduler import RunObserver, Scheduler

logger = logging.getLogger(__name__)

Declaration = Union[Workflow, Sequence[Job]]


def open_store(config: EngineConfig) -> ArtifactStore:
    """Redis when a URL is configured, otherwise files under artifact_dir."""
    if config.redis_url:
        return RedisArtifactStore(config.redis_url)
    return FileArtifactStore(config.artifact_dir)


def as_workflow(declaration: Declaration) -> Workflow:
    if isinstance(declaration, Workflow):
        return declaration
    return Workflow(name="workflow", jobs=list(declaration))


def run_status(graph: JobGraph, instances: List[JobInstance], aborted: bool) -> RunStatus:
    if aborted:
        return RunStatus.CANCELLED
    for inst in instances:
        if inst.status == JobStatus.FAILED and not graph.jobs[inst.job].continue_on_error:
            return RunStatus.FAILED
        # outside an abort, every cancellation traces back to a failure
        if inst.status == JobStatus.CANCELLED:
            return RunStatus.FAILED
    return RunStatus.SUCCEEDED


class RunController:
    """
    Entry point for one run: build the graph, check triggers, drive the
    scheduler, and fold the instance table into a RunResult.

    Configuration problems raise ConfigurationError before anything runs;
    job problems always come back as data in the RunResult.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        executor: Optional[StepExecutor] = None,
        store: Optional[ArtifactStore] = None,
        observers: Sequence[RunObserver] = (),
        cache: Optional[CacheStore] = None,
    ):
        self.config = config or EngineConfig()
        self.executor = executor or ShellStepExecutor(
            self.config.workspace,
            poll_interval=self.config.poll_interval,
            kill_grace=self.config.cancel_grace,
        )
        self.store = store if store is not None else open_store(self.config)
        self.observers = list(observers)
        self.cache = cache

        self._lock = threading.Lock()
        self._scheduler: Optional[Scheduler] = None
        self._abort_reason: Optional[str] = None

    def build(self, declaration: Declaration) -> JobGraph:
        workflow = as_workflow(declaration)
        return JobGraph.build(workflow.jobs, empty_matrix=self.config.empty_matrix)

    def _cache_for(self, graph: JobGraph) -> Optional[CacheStore]:
        # only created once some job declares a cache
        if self.cache is None and any(j.caches for j in graph.jobs.values()):
            self.cache = FileCacheStore(self.config.cache_dir)
        return self.cache

    def abort(self, reason: str = "run aborted") -> None:
        """Cancel the active run (or the next one, if called before it starts)."""
        with self._lock:
            self._abort_reason = self._abort_reason or reason
            scheduler = self._scheduler
        if scheduler is not None:
            scheduler.cancel(reason)

    def execute(self, declaration: Declaration, context: RunContext) -> RunResult:
        workflow = as_workflow(declaration)
        graph = self.build(workflow)
        started = utcnow()

        if not workflow.is_triggered_by(context):
            logger.info("Workflow '%s' is not triggered by %s on %r", workflow.name, context.event, context.ref)
            return RunResult(
                run_id=context.run_id,
                status=RunStatus.NOT_TRIGGERED,
                warnings=list(graph.warnings),
                started_at=started,
                finished_at=utcnow(),
            )

        runner = JobRunner(
            graph,
            context,
            self.executor,
            self.store,
            workflow_env=workflow.env,
            default_timeout=self.config.job_timeout,
            retention_days=self.config.retention_days,
            cache=self._cache_for(graph),
        )
        scheduler = Scheduler(
            graph,
            context,
            runner,
            max_workers=self.config.workers,
            cancel_grace=self.config.cancel_grace,
            poll_interval=self.config.poll_interval,
            stop_on_failure=self.config.stop_on_failure,
            observers=self.observers,
        )
        with self._lock:
            self._scheduler = scheduler
            pending_abort = self._abort_reason
        if pending_abort is not None:
            scheduler.cancel(pending_abort)

        logger.info("Run %s of '%s' started (%s %s)", context.run_id, workflow.name, context.event, context.ref)
        try:
            instances = scheduler.run()
        finally:
            with self._lock:
                self._scheduler = None
                self._abort_reason = None

        result = RunResult(
            run_id=context.run_id,
            status=run_status(graph, instances, scheduler.aborted),
            instances=[
                InstanceResult(
                    instance_id=inst.id,
                    job=inst.job,
                    binding=dict(inst.binding.values) if inst.binding else {},
                    status=inst.status,
                    reason=inst.reason,
                    outcome=inst.outcome,
                )
                for inst in instances
            ],
            warnings=list(scheduler.warnings),
            started_at=started,
            finished_at=utcnow(),
        )
        logger.info("Run %s finished: %s %s", context.run_id, result.status.value, result.counts())
        return result
