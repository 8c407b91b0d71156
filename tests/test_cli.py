"""Tests for the relayforge command line."""

import sys

import pytest
from click.testing import CliRunner

from relayforge.cli import cli, parse_inputs

GOOD = """
name: cli-demo
jobs:
  build:
    steps:
      - name: compile
        run: echo building $INPUT_FLAVOR
  test:
    needs: build
    steps:
      - name: unit
        run: echo testing
"""

FAILING = """
jobs:
  build:
    steps:
      - name: compile
        run: echo nope >&2; exit 3
  deploy:
    needs: build
    steps:
      - run: echo never
"""

PY_WORKFLOW = """
from relayforge import job, sh, wf

def workflow():
    return wf(job("only", sh("hello", "echo from python")), name="py-demo")
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def write(name, text):
        path = tmp_path / name
        path.write_text(text)
        return path

    return write


class TestValidate:

    def test_prints_plan(self, runner, project):
        project("relayforge.yml", GOOD)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0, result.output
        assert "1. build" in result.output
        assert "2. test" in result.output
        assert "OK: 2 job(s)" in result.output

    def test_python_workflow(self, runner, project):
        path = project("demo_workflow.py", PY_WORKFLOW)
        result = runner.invoke(cli, ["validate", "--workflow", str(path)])
        assert result.exit_code == 0, result.output
        assert "OK: 1 job(s)" in result.output

    def test_invalid_workflow(self, runner, project):
        project("relayforge.yml", "jobs:\n  a:\n    needs: ghost\n    steps: [{run: x}]\n")
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 1
        assert "Invalid workflow" in result.output
        assert "ghost" in result.output

    def test_no_workflow_found(self, runner, project):
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 1
        assert "No workflow file found" in result.output

    def test_multiple_workflows(self, runner, project):
        project("relayforge.yml", GOOD)
        project("other.workflow.yml", GOOD)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 1
        assert "Multiple workflow files found" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="steps run through a POSIX shell")
class TestRun:

    def test_successful_run(self, runner, project):
        project("relayforge.yml", GOOD)
        result = runner.invoke(cli, ["run", "--input", "FLAVOR=release"])
        assert result.exit_code == 0, result.output
        assert "[build/compile] building release" in result.output
        assert "[test/unit] testing" in result.output
        assert "RESULTS (SUCCESS)" in result.output

    def test_failed_run(self, runner, project):
        project("relayforge.yml", FAILING)
        result = runner.invoke(cli, ["run", "--runners", "1"])
        assert result.exit_code == 1
        assert "Exit code: 3" in result.output
        assert "RESULTS (FAILED)" in result.output
        assert "deploy: SKIPPED" in result.output
        assert "never" not in result.output

    def test_unreachable_tags(self, runner, project):
        project("relayforge.yml", "jobs:\n  gpu:\n    runs-on: gpu\n    steps: [{run: x}]\n")
        result = runner.invoke(cli, ["run", "--tag", "linux"])
        assert result.exit_code == 1
        assert "No runner can take some jobs" in result.output

    def test_bad_input(self, runner, project):
        project("relayforge.yml", GOOD)
        result = runner.invoke(cli, ["run", "--input", "novalue"])
        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output


def test_parse_inputs():
    assert parse_inputs(("a=1", "b=x=y", "c=")) == {"a": "1", "b": "x=y", "c": ""}
