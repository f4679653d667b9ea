"""Tests for running a single job instance."""

import threading

import pytest

from dagrun.artifacts import ArtifactKey
from dagrun.cache import InMemoryCacheStore
from dagrun.dag import JobGraph
from dagrun.dsl import cache, download, job, matrix, sh, upload
from dagrun.executor import ShellStepExecutor
from dagrun.model import JobInstance, JobStatus, MatrixBinding, OutcomeReason, RunContext
from dagrun.runner import JobRunner

from conftest import FakeExecutor


CTX = RunContext(event="push", ref="refs/heads/main", sha="deadbeef", run_id="r1")


def make_runner(jobs, executor, store, **kw):
    graph = JobGraph.build(jobs)
    return graph, JobRunner(graph, CTX, executor, store, **kw)


def first_instance(graph, name):
    return graph.instances_for(name, CTX).instances[0]


# -------------------------------------------------------------------------
# Steps
# -------------------------------------------------------------------------

def test_steps_run_in_order(executor, store):
    graph, runner = make_runner([job("build", sh("one", "echo 1"), sh("two", "echo 2"))], executor, store)
    outcome = runner.run(first_instance(graph, "build"), [])
    assert outcome.status == JobStatus.SUCCEEDED
    assert outcome.reason == OutcomeReason.OK
    assert executor.commands() == ["echo 1", "echo 2"]
    assert [s.status for s in outcome.steps] == ["succeeded", "succeeded"]
    assert outcome.steps[0].output == "ran echo 1"


def test_environment_precedence(executor, store):
    jb = job(
        "test",
        sh("show", "env", env={"LEVEL": "step", "DAGRUN_JOB": "spoofed"}),
        env={"LEVEL": "job", "JOB_ONLY": "1", "MATRIX_PY": "job"},
        matrix=matrix("py", ["3.11"]),
    )
    graph, runner = make_runner([jb], executor, store, workflow_env={"LEVEL": "workflow", "WF_ONLY": "1"})
    runner.run(first_instance(graph, "test"), [])
    env = executor.env_of("env")
    assert env["LEVEL"] == "step"
    assert env["JOB_ONLY"] == "1"
    assert env["WF_ONLY"] == "1"
    assert env["MATRIX_PY"] == "3.11"
    assert env["DAGRUN_JOB"] == "test"
    assert env["DAGRUN_INSTANCE"] == "test[0]"
    assert env["DAGRUN_RUN_ID"] == "r1"
    assert env["DAGRUN_SHA"] == "deadbeef"


def test_failing_step_skips_the_rest(store):
    executor = FakeExecutor(results={"make test": 2})
    jb = job("test", sh("build", "make"), sh("test", "make test"), sh("report", "make report"))
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "test"), [])
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == OutcomeReason.STEP_FAILED
    assert outcome.failed_step == 1
    assert outcome.exit_code == 2
    assert executor.commands() == ["make", "make test"]
    assert [s.status for s in outcome.steps] == ["succeeded", "failed", "skipped"]


def test_continue_on_error_keeps_going(store):
    executor = FakeExecutor(results={"lint": 3})
    jb = job("qa", sh("lint", "lint"), sh("test", "pytest"), continue_on_error=True)
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "qa"), [])
    assert outcome.status == JobStatus.SUCCEEDED
    assert executor.commands() == ["lint", "pytest"]
    assert len(outcome.warnings) == 1
    assert "exit=3" in outcome.warnings[0]


def test_step_condition(executor, store):
    jb = job("ship", sh("tag only", "release", when="tag != ''"), sh("always", "echo done"))
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "ship"), [])
    assert outcome.ok
    assert executor.commands() == ["echo done"]
    assert outcome.steps[0].status == "skipped"


def test_executor_exception_is_a_failure(store):
    executor = FakeExecutor(results={"boom": RuntimeError("executor went away")})
    graph, runner = make_runner([job("x", sh("boom", "boom"), sh("after", "after"))], executor, store)
    outcome = runner.run(first_instance(graph, "x"), [])
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == OutcomeReason.EXECUTOR_ERROR
    assert "executor went away" in outcome.message
    assert executor.commands() == ["boom"]


# -------------------------------------------------------------------------
# Timeout / stop
# -------------------------------------------------------------------------

def test_timeout(store):
    executor = FakeExecutor(delays={"sleep": 5.0})
    jb = job("slow", sh("sleep", "sleep"), sh("never", "never"), timeout=0.05)
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "slow"), [])
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == OutcomeReason.TIMEOUT
    assert "never" not in executor.commands()


def test_timeout_is_not_tolerated_by_continue_on_error(store):
    executor = FakeExecutor(delays={"sleep": 5.0})
    jb = job("slow", sh("sleep", "sleep"), timeout=0.05, continue_on_error=True)
    graph, runner = make_runner([jb], executor, store)
    assert runner.run(first_instance(graph, "slow"), []).reason == OutcomeReason.TIMEOUT


def test_stop_before_start(executor, store):
    graph, runner = make_runner([job("x", sh("a", "a"))], executor, store)
    stop = threading.Event()
    stop.set()
    outcome = runner.run(first_instance(graph, "x"), [], stop)
    assert outcome.status == JobStatus.CANCELLED
    assert executor.commands() == []


def test_stop_while_running(store):
    executor = FakeExecutor(delays={"long": 5.0})
    graph, runner = make_runner([job("x", sh("long", "long"), sh("b", "b"))], executor, store)
    stop = threading.Event()
    threading.Timer(0.05, stop.set).start()
    outcome = runner.run(first_instance(graph, "x"), [], stop)
    assert outcome.status == JobStatus.CANCELLED
    assert outcome.reason == OutcomeReason.CANCELLED
    assert executor.commands() == ["long"]


# -------------------------------------------------------------------------
# Artifacts
# -------------------------------------------------------------------------

def test_outputs_are_stored(store):
    executor = FakeExecutor(files={"dist": b"wheel-bytes"})
    jb = job("build", sh("build", "make"), uploads=[upload("dist", "dist", retention_days=3)])
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "build"), [])
    key = ArtifactKey("r1", "build", "dist")
    assert outcome.ok
    assert outcome.artifacts == [str(key)]
    assert store.get(key) == b"wheel-bytes"
    assert store.record(key).retention_days == 3


def test_matrix_output_names_are_rendered(store):
    executor = FakeExecutor(files={"results": b"xml"})
    jb = job("test", sh("t", "pytest"), matrix=matrix("py", ["3.8", "3.9"]),
             uploads=[upload("results-{matrix.py}", "results")])
    graph, runner = make_runner([jb], executor, store)
    for inst in graph.instances_for("test", CTX).instances:
        assert runner.run(inst, []).ok
    assert store.exists(ArtifactKey("r1", "test[0]", "results-3.8"))
    assert store.exists(ArtifactKey("r1", "test[1]", "results-3.9"))


def test_missing_output_fails_the_job(executor, store):
    jb = job("build", sh("build", "make"), uploads=[upload("dist", "dist")])
    graph, runner = make_runner([jb], executor, store)
    outcome = runner.run(first_instance(graph, "build"), [])
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == OutcomeReason.ARTIFACT_ERROR


class TestInputs:
    @pytest.fixture
    def graph_and_runner(self, executor, store):
        jobs = [
            job("test", sh("t", "pytest"), matrix=matrix("py", ["3.8", "3.9"]),
                uploads=[upload("results-{matrix.py}", "results")]),
            job("build", sh("b", "make"), uploads=[upload("dist", "dist")]),
            job("report", sh("r", "report"), needs=["test", "build"],
                downloads=[download("test", "results-{matrix.py}", "reports"), download("build", "dist", "dist")]),
        ]
        return make_runner(jobs, executor, store)

    def test_inputs_from_every_producer_instance(self, graph_and_runner, executor, store):
        graph, runner = graph_and_runner
        producers = {
            "test": [
                JobInstance(index=0, job="test", binding=MatrixBinding(0, {"py": "3.8"}), status=JobStatus.SUCCEEDED),
                JobInstance(index=1, job="test", binding=MatrixBinding(1, {"py": "3.9"}), status=JobStatus.SUCCEEDED),
            ],
            "build": [JobInstance(index=2, job="build", status=JobStatus.SUCCEEDED)],
        }
        store.put(ArtifactKey("r1", "test[0]", "results-3.8"), b"a")
        store.put(ArtifactKey("r1", "test[1]", "results-3.9"), b"b")
        store.put(ArtifactKey("r1", "build", "dist"), b"w")

        outcome = runner.execute(first_instance(graph, "report"), threading.Event(), producers)
        assert outcome.ok
        assert executor.materialized == [("reports/test-0", b"a"), ("reports/test-1", b"b"), ("dist", b"w")]

    def test_skipped_producer_only_warns(self, graph_and_runner, executor, store):
        graph, runner = graph_and_runner
        producers = {
            "test": [],
            "build": [JobInstance(index=0, job="build", status=JobStatus.SKIPPED)],
        }
        outcome = runner.execute(first_instance(graph, "report"), threading.Event(), producers)
        assert outcome.ok
        assert len(outcome.warnings) == 2
        assert executor.materialized == []

    def test_missing_artifact_fails_before_steps(self, graph_and_runner, executor, store):
        graph, runner = graph_and_runner
        producers = {"build": [JobInstance(index=0, job="build", status=JobStatus.SUCCEEDED)]}
        outcome = runner.execute(first_instance(graph, "report"), threading.Event(), producers)
        assert outcome.status == JobStatus.FAILED
        assert outcome.reason == OutcomeReason.ARTIFACT_ERROR
        assert executor.commands() == []


def test_corrupt_artifact_fails_before_steps(tmp_path, store):
    jobs = [
        job("build", sh("b", "make"), uploads=[upload("dist", "dist")]),
        job("deploy", sh("d", "true"), needs=["build"], downloads=[download("build", "dist", "dist")]),
    ]
    graph, runner = make_runner(jobs, ShellStepExecutor(tmp_path), store)
    store.put(ArtifactKey("r1", "build", "dist"), b"not a tarball")
    producers = {"build": [JobInstance(index=0, job="build", status=JobStatus.SUCCEEDED)]}

    outcome = runner.execute(first_instance(graph, "deploy"), threading.Event(), producers)
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == OutcomeReason.ARTIFACT_ERROR
    assert "dist" in outcome.message
    assert outcome.steps == []


# -------------------------------------------------------------------------
# Caches
# -------------------------------------------------------------------------

class TestCaches:
    KEY = "pip-{matrix.py}-{hash}"

    @pytest.fixture
    def caches(self):
        return InMemoryCacheStore()

    @pytest.fixture
    def executor(self):
        return FakeExecutor(files={".venv": b"fresh", "requirements.txt": b"click"})

    def make(self, executor, store, caches):
        spec = cache(".venv", self.KEY, restore_keys=["pip-{matrix.py}-"], hash_files=["requirements.txt"])
        jb = job("test", sh("install", "pip install"), matrix=matrix("py", ["3.11"]), caches=[spec])
        graph, runner = make_runner([jb], executor, store, cache=caches)
        return runner, first_instance(graph, "test")

    def exact_key(self, runner, inst, executor):
        return runner.cache_key(inst, self.KEY, executor.fingerprint(["requirements.txt"]))

    def test_miss_saves_after_success(self, executor, store, caches):
        runner, inst = self.make(executor, store, caches)
        outcome = runner.run(inst, [])
        assert outcome.ok
        assert outcome.cache_hits == {}
        key = self.exact_key(runner, inst, executor)
        assert key.startswith("pip-3.11-") and "{hash}" not in key
        assert [k for k, _ in caches.entries()] == [key]
        assert caches.load(key) == b"fresh"

    def test_exact_hit_is_restored_and_not_saved_again(self, executor, store, caches):
        runner, inst = self.make(executor, store, caches)
        key = self.exact_key(runner, inst, executor)
        caches.save(key, b"cached")

        outcome = runner.run(inst, [])
        assert outcome.cache_hits == {".venv": key}
        assert executor.materialized == [(".venv", b"cached")]
        assert caches.load(key) == b"cached"
        assert len(caches.entries()) == 1

    def test_partial_hit_restores_newest_prefix_match(self, executor, store, caches):
        runner, inst = self.make(executor, store, caches)
        caches.save("pip-3.11-older", b"old")
        caches.save("pip-3.11-newer", b"new")
        caches.save("pip-3.12-other", b"other")

        outcome = runner.run(inst, [])
        assert outcome.cache_hits == {".venv": "pip-3.11-newer"}
        assert executor.materialized == [(".venv", b"new")]
        assert caches.load(self.exact_key(runner, inst, executor)) == b"fresh"

    def test_failed_job_saves_nothing(self, store, caches):
        executor = FakeExecutor(results={"pip install": 1}, files={".venv": b"fresh"})
        runner, inst = self.make(executor, store, caches)
        assert runner.run(inst, []).status == JobStatus.FAILED
        assert caches.entries() == []

    def test_cache_problems_only_warn(self, store, caches):
        executor = FakeExecutor()  # nothing to collect at .venv
        runner, inst = self.make(executor, store, caches)
        outcome = runner.run(inst, [])
        assert outcome.ok
        assert any("cache save" in w for w in outcome.warnings)
        assert caches.entries() == []

    def test_without_a_cache_store(self, executor, store):
        runner, inst = self.make(executor, store, None)
        outcome = runner.run(inst, [])
        assert outcome.ok
        assert any("no cache store" in w for w in outcome.warnings)
