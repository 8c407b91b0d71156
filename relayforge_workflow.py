# relayforge_workflow.py
# Workflow for relayforge itself: install, lint, test and a smoke run of the CLI
from __future__ import annotations

from relayforge.dsl import job, sh, wf


def workflow():
    return wf(
        job(
            "install",
            sh("Install package", "pip install -e '.[test]'"),
        ),

        # Lint runs next to the tests once the package is installed
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
            needs=["install"],
        ),

        job(
            "test",
            sh("Run pytest", "pytest -q"),
            needs=["install"],
            env={"PYTHONDONTWRITEBYTECODE": "1"},
        ),

        # Validates this very file through the CLI
        job(
            "smoke",
            sh("Validate workflow", "relayforge validate --workflow relayforge_workflow.py"),
            needs=["test", "lint"],
        ),
        name="relayforge-ci",
        description="Checks run on every change to relayforge",
    )
