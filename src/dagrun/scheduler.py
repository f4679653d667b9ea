# scheduler.py
"""
The run's state machine.

One coordinator (the thread calling `Scheduler.run`) owns every status
change under a single lock. Each admitted instance gets its own worker
thread which only talks back through a queue, so a worker that never
returns can be abandoned and its slot reclaimed.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple

from . import conditions
from .dag import JobGraph
from .errors import InvalidTransition
from .model import (
    JobInstance,
    JobOutcome,
    JobStatus,
    OutcomeReason,
    RunContext,
    TRANSITIONS,
    TransitionEvent,
    utcnow,
)
from .runner import JobRunner

logger = logging.getLogger(__name__)

_WAITING = (JobStatus.PENDING, JobStatus.BLOCKED)


class RunObserver:
    """Receives every status change of a run, in order. Override what you need."""

    def on_transition(self, event: TransitionEvent) -> None:
        pass


@dataclass
class _Done:
    index: int
    outcome: JobOutcome


@dataclass
class _Worker:
    thread: threading.Thread
    stop: threading.Event
    deadline: float


class Scheduler:
    def __init__(
        self,
        graph: JobGraph,
        context: RunContext,
        runner: JobRunner,
        *,
        max_workers: int = 1,
        cancel_grace: float = 10.0,
        poll_interval: float = 0.1,
        stop_on_failure: bool = False,
        observers: Sequence[RunObserver] = (),
    ):
        self.graph = graph
        self.context = context
        self.runner = runner
        self.max_workers = max(1, max_workers)
        self.cancel_grace = cancel_grace
        self.poll_interval = poll_interval
        self.stop_on_failure = stop_on_failure
        self.observers = list(observers)

        # arena: instances by index, job -> instance indices
        self.instances: List[JobInstance] = []
        self.by_job: Dict[str, List[int]] = {}
        self.activated: Dict[str, Optional[bool]] = {}
        self.events: List[TransitionEvent] = []
        self.warnings: List[str] = list(graph.warnings)

        self._lock = threading.RLock()
        self._done: "queue.Queue[Optional[_Done]]" = queue.Queue()
        self._ready: Deque[int] = deque()
        self._running: Dict[int, _Worker] = {}
        self._aborted = threading.Event()
        self._cancel_reason: Optional[str] = None
        self._halted_by: Optional[str] = None
        # jobs skipped by a status-aware condition while an upstream job had failed
        self._masked: Set[str] = set()

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    def cancel(self, reason: str = "run cancelled") -> None:
        """Abort the run. Safe to call from any thread, any number of times."""
        with self._lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason
                logger.warning("Cancelling run %s: %s", self.context.run_id, reason)
        self._aborted.set()
        self._done.put(None)  # wake the coordinator

    def run(self) -> List[JobInstance]:
        with self._lock:
            self._expand()
            if not self.aborted:
                self._settle()
                self._admit()

        while not self.aborted:
            with self._lock:
                if not self._running and not self._ready:
                    break
            try:
                msg = self._done.get(timeout=self.poll_interval)
            except queue.Empty:
                msg = None
            with self._lock:
                if self.aborted:
                    if msg is not None:
                        self._done.put(msg)  # let _abort account for it
                    break
                while msg is not None:
                    self._complete(msg)
                    try:
                        msg = self._done.get_nowait()
                    except queue.Empty:
                        msg = None
                self._watchdog()
                self._settle()
                self._admit()

        if self.aborted:
            self._abort()
        return self.instances

    def job_result(self, job: str) -> str:
        """Aggregated result of a job as seen by status-aware conditions."""
        insts = [self.instances[i] for i in self.by_job.get(job, [])]
        tolerated = self.graph.jobs[job].continue_on_error
        if not tolerated and any(i.status == JobStatus.FAILED for i in insts):
            return "failed"
        if any(i.status == JobStatus.CANCELLED for i in insts):
            return "cancelled"
        if all(i.status == JobStatus.SKIPPED for i in insts):
            return "skipped"
        return "succeeded"

    # ------------------------------------------------------------------
    # coordinator internals (lock held)
    # ------------------------------------------------------------------

    def _expand(self) -> None:
        for job in self.graph.order():
            exp = self.graph.instances_for(job, self.context, start_index=len(self.instances))
            self.instances.extend(exp.instances)
            self.by_job[job] = [i.index for i in exp.instances]
            self.activated[job] = exp.activated
            if not exp.instances:
                logger.warning("Job '%s' has no instances in this run", job)
        logger.info("Run %s: %d job(s), %d instance(s)",
                    self.context.run_id, len(self.by_job), len(self.instances))

    def _transition(self, inst: JobInstance, new: JobStatus, reason: Optional[str] = None) -> None:
        old = inst.status
        if new not in TRANSITIONS.get(old, frozenset()):
            raise InvalidTransition(instance=inst.id, old=old.value, new=new.value)
        now = utcnow()
        inst.status = new
        inst.reason = reason
        if new == JobStatus.RUNNING:
            inst.started_at = now
        elif new.is_terminal:
            inst.finished_at = now

        event = TransitionEvent(instance_id=inst.id, old=old, new=new, timestamp=now, reason=reason)
        self.events.append(event)
        logger.debug("%s: %s -> %s%s", inst.id, old.value, new.value, f" ({reason})" if reason else "")
        for obs in self.observers:
            try:
                obs.on_transition(event)
            except Exception:
                logger.exception("Observer %r failed on %s", obs, inst.id)

    def _deps_terminal(self, job: str) -> bool:
        return all(
            self.instances[i].status.is_terminal
            for dep in self.graph.dependencies(job)
            for i in self.by_job[dep]
        )

    def _upstream_problem(self, job: str) -> Optional[Tuple[str, str]]:
        for dep in self.graph.dependencies(job):
            res = self.job_result(dep)
            if res in ("failed", "cancelled"):
                return dep, res
            if dep in self._masked:
                return dep, "skipped after an upstream failure"
        return None

    def _skipped_dependency(self, job: str) -> Optional[str]:
        """First dependency that was skipped. Jobs with no instances do not count."""
        for dep in self.graph.dependencies(job):
            if self.by_job[dep] and self.job_result(dep) == "skipped":
                return dep
        return None

    def _settle(self) -> None:
        """
        Move waiting instances forward. Jobs are visited in topological
        order so skips and cancellations reach every descendant in one pass.
        """
        newly_ready: List[JobInstance] = []

        for job in self.graph.order():
            if self._halted_by is not None:
                for i in self.by_job[job]:
                    inst = self.instances[i]
                    if inst.status in _WAITING or inst.status == JobStatus.READY:
                        self._transition(inst, JobStatus.CANCELLED, f"fail-fast: {self._halted_by} failed")
                continue

            waiting = [self.instances[i] for i in self.by_job[job] if self.instances[i].status in _WAITING]
            if not waiting:
                continue

            if not self._deps_terminal(job):
                for inst in waiting:
                    if inst.status == JobStatus.PENDING:
                        self._transition(inst, JobStatus.BLOCKED, "waiting for dependencies")
                continue

            node = self.graph.condition(job)
            if self.activated[job] is None:
                results = {dep: self.job_result(dep) for dep in self.graph.dependencies(job)}
                ok = conditions.evaluate(node, self.context, results)
                logger.debug("Condition of '%s' with %s -> %s", job, results, ok)
                if not ok and self._upstream_problem(job) is not None:
                    self._masked.add(job)
                for inst in waiting:
                    if ok:
                        self._transition(inst, JobStatus.READY)
                        newly_ready.append(inst)
                    else:
                        self._transition(inst, JobStatus.SKIPPED, "condition false")
                continue

            # upstream failure wins over a skipped dependency, which wins over a false condition
            problem = self._upstream_problem(job)
            skipped = self._skipped_dependency(job) if problem is None else None
            for inst in waiting:
                if problem is not None:
                    dep, res = problem
                    self._transition(inst, JobStatus.CANCELLED, f"dependency '{dep}' {res}")
                elif skipped is not None:
                    self._transition(inst, JobStatus.SKIPPED, f"dependency '{skipped}' skipped")
                elif self.activated[job] is False:
                    self._transition(inst, JobStatus.SKIPPED, "condition false")
                else:
                    self._transition(inst, JobStatus.READY)
                    newly_ready.append(inst)

        newly_ready.sort(key=lambda i: (i.job, i.index))
        self._ready.extend(i.index for i in newly_ready)

    def _admit(self) -> None:
        if self._halted_by is not None or self.aborted:
            self._ready.clear()
            return
        while self._ready and len(self._running) < self.max_workers:
            inst = self.instances[self._ready.popleft()]
            if inst.status != JobStatus.READY:
                continue
            self._start(inst)

    def _start(self, inst: JobInstance) -> None:
        job = self.graph.jobs[inst.job]
        producers = {
            inp.job: [self.instances[i] for i in self.by_job[inp.job]]
            for inp in job.artifact_inputs
        }
        stop = threading.Event()
        self._transition(inst, JobStatus.RUNNING)
        logger.info("Starting %s", inst.label)
        thread = threading.Thread(
            target=self._work,
            args=(inst, stop, producers),
            name=f"dagrun-{inst.id}",
            daemon=True,
        )
        self._running[inst.index] = _Worker(
            thread=thread,
            stop=stop,
            deadline=time.monotonic() + self.runner.budget(inst),
        )
        thread.start()

    def _work(self, inst: JobInstance, stop: threading.Event, producers: Dict[str, List[JobInstance]]) -> None:
        try:
            outcome = self.runner.execute(inst, stop, producers)
        except Exception as e:
            logger.exception("Worker for %s crashed", inst.id)
            outcome = JobOutcome(status=JobStatus.FAILED, reason=OutcomeReason.EXECUTOR_ERROR, message=str(e))
        self._done.put(_Done(index=inst.index, outcome=outcome))

    def _complete(self, msg: _Done) -> None:
        inst = self.instances[msg.index]
        self._running.pop(msg.index, None)
        if inst.status != JobStatus.RUNNING:
            logger.debug("Discarding late result for %s (%s)", inst.id, inst.status.value)
            return

        outcome = msg.outcome
        inst.outcome = outcome
        for w in outcome.warnings:
            self.warnings.append(f"{inst.id}: {w}")

        reason = None if outcome.reason == OutcomeReason.OK else outcome.reason.value
        self._transition(inst, outcome.status, reason)
        logger.info("Finished %s: %s", inst.label, outcome.status.value)

        if outcome.status == JobStatus.FAILED:
            self._on_failure(inst)

    def _on_failure(self, inst: JobInstance) -> None:
        if self.graph.jobs[inst.job].continue_on_error:
            self.warnings.append(f"{inst.id} failed (continue_on_error)")
            return
        if self.stop_on_failure and self._halted_by is None:
            self._halted_by = inst.id
            logger.warning("Stopping run after failure of %s", inst.id)

    def _watchdog(self) -> None:
        now = time.monotonic()
        for index, worker in list(self._running.items()):
            # the runner enforces the budget itself; this only catches workers stuck past it
            if now < worker.deadline + self.cancel_grace:
                continue
            worker.stop.set()
            inst = self.instances[index]
            logger.warning("Worker for %s did not stop after its timeout; abandoning it", inst.id)
            del self._running[index]
            inst.outcome = JobOutcome(
                status=JobStatus.FAILED,
                reason=OutcomeReason.TIMEOUT,
                message=f"{inst.id} exceeded its time budget and did not stop",
            )
            self._transition(inst, JobStatus.FAILED, OutcomeReason.TIMEOUT.value)
            self._on_failure(inst)

    def _abort(self) -> None:
        reason = self._cancel_reason or "run cancelled"
        with self._lock:
            for inst in self.instances:
                if inst.status in (JobStatus.PENDING, JobStatus.BLOCKED, JobStatus.READY):
                    self._transition(inst, JobStatus.CANCELLED, reason)
            self._ready.clear()
            for worker in self._running.values():
                worker.stop.set()
            pending = set(self._running)

        deadline = time.monotonic() + self.cancel_grace
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                msg = self._done.get(timeout=min(self.poll_interval, remaining))
            except queue.Empty:
                continue
            if msg is not None:
                pending.discard(msg.index)

        with self._lock:
            for index in list(self._running):
                inst = self.instances[index]
                if inst.status == JobStatus.RUNNING:
                    self._transition(inst, JobStatus.CANCELLED, reason)
            self._running.clear()
