"""Terminal output for dagrun runs."""

from __future__ import annotations

import sys
import traceback
from typing import Dict, List, Optional, Sequence

from ..model import JobStatus, RunResult, RunStatus, TransitionEvent
from ..scheduler import RunObserver

RULE_WIDTH = 40


class Console:
    """
    Everything the CLI shows a user goes through here.

    Progress goes to stdout, problems to stderr. With debug enabled,
    failures print in full and exceptions print their traceback.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    @staticmethod
    def _err(line: str = "") -> None:
        print(line, file=sys.stderr)

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, workflow: str, run_id: str, event: str, ref: str, job_count: int) -> None:
        trigger = f"{event} ({ref})" if ref else event
        print(f"\nRUN {run_id}")
        print(f"  workflow: {workflow}")
        print(f"  trigger:  {trigger}")
        print(f"  jobs:     {job_count}\n")

    # ---- per-instance lines ----

    def print_job_start(self, name: str) -> None:
        print(f"JOB STARTED: {name}")

    def print_success(self, name: str) -> None:
        print(f"JOB SUCCEEDED: {name}")

    def print_failure(self, name: str, reason: str, exit_code: Optional[int] = None, step: Optional[str] = None) -> None:
        """`reason` is shortened to its first line unless debug is on."""
        print(f"JOB FAILED: {name}")
        if step:
            print(f"  step: {step}")
        if exit_code is not None:
            print(f"  exit code: {exit_code}")
        shown = reason if self.debug else (reason.splitlines() or ["unknown"])[0]
        print(f"  reason: {shown}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        print(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        print(f"JOB CANCELLED: {name} ({reason})")

    # ---- summaries ----

    def print_plan(self, batches: Sequence[Sequence[str]], instances: Dict[str, List[str]]) -> None:
        self.print_header("PLAN")
        for number, batch in enumerate(batches, start=1):
            print(f"Batch {number}:")
            for job in batch:
                ids = instances.get(job, [])
                if not ids:
                    print(f"  {job} (no instances)")
                elif ids == [job]:
                    print(f"  {job}")
                else:
                    print(f"  {job}: {', '.join(ids)}")

    def print_warnings(self, warnings: Sequence[str]) -> None:
        if warnings:
            print("\nWARNINGS")
            for w in warnings:
                print(f"  {w}")

    def print_results(self, result: RunResult) -> None:
        rule = "=" * RULE_WIDTH
        print(f"\n{rule}\nRESULTS ({result.status.value.upper()})\n{rule}")
        if result.status == RunStatus.NOT_TRIGGERED:
            print("  workflow not triggered by this event")
            return
        for r in result.instances:
            suffix = f" ({r.reason})" if r.reason else ""
            print(f"  {r.instance_id}: {r.status.value.upper()}{suffix}")
        tally = result.counts()
        if tally:
            print("\n  " + ", ".join(f"{k}={tally[k]}" for k in sorted(tally)))

    # ---- problems ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print an error block on stderr.

        Args:
            title: Short headline
            message: What went wrong
            details: Extra lines, indented
            suggestion: How to fix it, printed last
        """
        self._err(f"\nERROR: {title}")
        self._err(message)
        for line in details or []:
            self._err(f"  {line}")
        if suggestion:
            self._err(f"\n{suggestion}")

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


class ConsoleObserver(RunObserver):
    """Prints job instance transitions as they happen."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or get_console()

    def on_transition(self, event: TransitionEvent) -> None:
        c = self.console
        name = event.instance_id
        if event.new == JobStatus.RUNNING:
            c.print_job_start(name)
        elif event.new == JobStatus.SUCCEEDED:
            c.print_success(name)
        elif event.new == JobStatus.FAILED:
            c.print_failure(name, event.reason or "failed")
        elif event.new == JobStatus.SKIPPED:
            c.print_job_skipped(name, event.reason or "condition false")
        elif event.new == JobStatus.CANCELLED:
            c.print_job_cancelled(name, event.reason or "cancelled")
        else:
            c.print_debug(f"{name}: {event.old.value} -> {event.new.value}")


# set by the CLI; library callers get a default one on first use
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
