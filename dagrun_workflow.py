# dagrun_workflow.py
# Workflow for checking dagrun itself: lint, tests across python versions, build, release.
from __future__ import annotations

from dagrun.dsl import cache, download, job, matrix, on, sh, upload, wf


def workflow():
    return wf(
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            title="Quality Check",
        ),
        job(
            "test",
            sh("Install package", "python$MATRIX_PYTHON -m pip install -e '.[test]'"),
            sh("Run pytest", "mkdir -p reports && python$MATRIX_PYTHON -m pytest -q --junitxml=reports/junit.xml"),
            needs=["lint"],
            matrix=matrix("python", ["3.10", "3.11", "3.12"]),
            uploads=[upload("test-results-{matrix.python}", "reports", retention_days=30)],
            caches=[
                cache(
                    ".cache/pip",
                    "pip-{matrix.python}-{hash}",
                    restore_keys=["pip-{matrix.python}-"],
                    hash_files=["pyproject.toml"],
                )
            ],
            env={"PIP_CACHE_DIR": ".cache/pip"},
            timeout=30 * 60,
            title="Test Suite",
        ),
        job(
            "report",
            sh("Summarize", "ls -R reports"),
            needs=["test"],
            downloads=[download("test", "test-results-{matrix.python}", "reports")],
            when="always()",
        ),
        job(
            "build",
            sh("Build sdist and wheel", "python -m pip wheel --no-deps -w dist ."),
            needs=["test"],
            when="branch == 'develop' || branch == 'main'",
            uploads=[upload("dist", "dist")],
        ),
        job(
            "publish",
            sh("Show wheel", "ls dist"),
            sh("Upload", "echo \"publishing $DAGRUN_SHA\""),
            needs=["build"],
            downloads=[download("build", "dist", "dist")],
            when="ref == 'refs/heads/main'",
        ),
        job(
            "audit",
            sh("pip-audit", "pip-audit"),
            when="event == 'schedule' || event == 'workflow_dispatch'",
            continue_on_error=True,
        ),
        name="dagrun CI",
        on=on(push=["main", "develop", "feature/*"], pull_request=["main", "develop"], schedule=[], workflow_dispatch=[]),
        env={"PYTHONDONTWRITEBYTECODE": "1"},
    )
