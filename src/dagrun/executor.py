# executor.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import signal
import subprocess
import tarfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ArtifactError

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 64 * 1024


@dataclass
class StepResult:
    """What a step executor reports for one command."""
    exit_code: int
    output: bytes = b""
    timed_out: bool = False
    stopped: bool = False


class StepExecutor(ABC):
    """
    The boundary to whatever actually runs step commands.

    The engine treats commands as opaque. `stop` is set when the run is
    aborted or the job ran out of time; implementations should stop the
    command promptly and report `stopped=True` / `timed_out=True`.
    """

    @abstractmethod
    def execute(
        self,
        command: str,
        env: Dict[str, str],
        timeout: Optional[float],
        stop: Optional[threading.Event] = None,
        cwd: Optional[str] = None,
    ) -> StepResult:
        ...

    @abstractmethod
    def collect(self, path: str) -> bytes:
        """Pack what lives at `path` so it can be uploaded as an artifact."""

    @abstractmethod
    def materialize(self, path: str, data: bytes) -> None:
        """Unpack an artifact produced by `collect` at `path`."""

    @abstractmethod
    def fingerprint(self, patterns: Sequence[str]) -> str:
        """Digest of the files matched by `patterns` (used for {hash} in cache keys)."""


class ShellStepExecutor(StepExecutor):
    """Runs commands with the system shell inside a workspace directory."""

    def __init__(self, workspace: str | Path = ".", *, poll_interval: float = 0.1, kill_grace: float = 5.0):
        self.workspace = Path(workspace).resolve()
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    def _resolve(self, rel: Optional[str]) -> Path:
        return (self.workspace / (rel or ".")).resolve()

    def execute(
        self,
        command: str,
        env: Dict[str, str],
        timeout: Optional[float],
        stop: Optional[threading.Event] = None,
        cwd: Optional[str] = None,
    ) -> StepResult:
        workdir = self._resolve(cwd)
        if not workdir.exists():
            raise FileNotFoundError(f"step cwd not found: {workdir}")

        full_env = os.environ.copy()
        full_env.update(env)

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(workdir),
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=(os.name == "posix"),
        )

        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = stopped = False
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if stop is not None and stop.is_set():
                    stopped = True
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                if stopped or timed_out:
                    self._terminate(proc)
                    out, _ = proc.communicate()
                    break

        return StepResult(
            exit_code=proc.returncode,
            output=(out or b"")[-OUTPUT_TAIL:],
            timed_out=timed_out,
            stopped=stopped,
        )

    def _terminate(self, proc: subprocess.Popen) -> None:
        logger.debug("Terminating pid %s", proc.pid)
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    # ---- artifacts ----

    def collect(self, path: str) -> bytes:
        src = self._resolve(path)
        if not src.exists():
            raise FileNotFoundError(f"artifact path not found: {src}")

        buf = io.BytesIO()
        try:
            with tarfile.open(fileobj=buf, mode="w:gz") as tar:
                if src.is_file():
                    tar.add(str(src), arcname=src.name, recursive=False)
                else:
                    # deterministic traversal
                    for f in sorted(src.rglob("*")):
                        if f.is_file():
                            tar.add(str(f), arcname=str(f.relative_to(src)).replace("\\", "/"), recursive=False)
        except tarfile.TarError as e:
            raise ArtifactError(key=path, message=f"could not pack: {e}") from e
        return buf.getvalue()

    def materialize(self, path: str, data: bytes) -> None:
        dest = self._resolve(path)
        dest.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=str(dest), filter="data")
                else:
                    tar.extractall(path=str(dest))
        except tarfile.TarError as e:
            raise ArtifactError(key=path, message=f"not a valid archive: {e}") from e

    # ---- cache keys ----

    def _resolve_globs(self, patterns: Sequence[str]) -> List[Path]:
        out: List[Path] = []
        for pat in patterns:
            pat = pat.strip()
            if not pat:
                continue
            direct = self.workspace / pat
            if direct.exists():
                out.append(direct)
            elif not Path(pat).is_absolute():
                out.extend(sorted(self.workspace.glob(pat)))
        return out

    def fingerprint(self, patterns: Sequence[str]) -> str:
        files: Dict[str, str] = {}
        for p in self._resolve_globs(patterns):
            for f in [p] if p.is_file() else sorted(p.rglob("*")):
                if not f.is_file():
                    continue
                rel = os.path.relpath(f, self.workspace).replace("\\", "/")
                files[rel] = hashlib.sha256(f.read_bytes()).hexdigest()
        payload: List[Tuple[str, str]] = sorted(files.items())
        return hashlib.sha256(json.dumps(payload, separators=(",", ":")).encode("utf-8")).hexdigest()
