from .controller import RunController
from .config import EngineConfig
from .model import Job, Step, Workflow, RunContext, RunResult, RunStatus, JobStatus
# Imported last: the dsl helpers `matrix` and `cache` share names with submodules
# that the imports above load, which would otherwise shadow these functions.
from .dsl import job, sh, matrix, upload, download, cache, on, wf, workflow, JobBuilder, build

__all__ = [
    "job", "sh", "matrix", "upload", "download", "cache", "on", "wf", "workflow", "JobBuilder", "build",
    "RunController", "EngineConfig",
    "Job", "Step", "Workflow", "RunContext", "RunResult", "RunStatus", "JobStatus",
]
