"""Tests for the command line interface."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from chartfleet import cli as cli_module
from chartfleet.cli import cli
from chartfleet.helmexec import HelmExec

from conftest import FakeRunner, write_chart

STATE = """
releases:
  - name: db
    namespace: data
    chart: ./db
    labels:
      tier: data
  - name: api
    namespace: apps
    chart: ./api
    needs: [data/db]
    labels:
      tier: backend
"""


@pytest.fixture
def fake_helm(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    runner = FakeRunner()

    def factory(console, helm_binary="helm"):
        return HelmExec(console, helm_binary=helm_binary, run=runner)

    monkeypatch.setattr(cli_module, "HelmExec", factory)
    return runner


@pytest.fixture
def state_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("CHARTFLEET_TEMPDIR", str(tmp_path / "work"))
    write_chart(tmp_path / "db", name="db")
    write_chart(tmp_path / "api", name="api")
    path = tmp_path / "chartfleet.yaml"
    path.write_text(textwrap.dedent(STATE))
    return str(path)


def invoke(*args: str):
    return CliRunner().invoke(cli, list(args), obj={})


class TestStateDiscovery:
    def test_missing_explicit_file(self, fake_helm: FakeRunner) -> None:
        result = invoke("--file", "does-not-exist.yaml", "sync")
        assert result.exit_code == 1
        assert "State file not found" in result.output

    def test_no_default_file(self, fake_helm: FakeRunner) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["list"], obj={})
        assert result.exit_code == 1
        assert "No state file found" in result.output
        assert "helmfile.yaml" in result.output

    def test_default_file_in_cwd(self, fake_helm: FakeRunner) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem():
            Path("chartfleet.yaml").write_text("releases:\n  - name: a\n    chart: stable/a\n")
            result = runner.invoke(cli, ["list"], obj={})
        assert result.exit_code == 0, result.output
        assert "stable/a" in result.output

    def test_invalid_state(self, tmp_path: Path, fake_helm: FakeRunner) -> None:
        p = tmp_path / "bad.yaml"
        p.write_text("environments: {}\nreleases: []\n")
        result = invoke("--file", str(p), "list")
        assert result.exit_code == 1
        assert "environments and releases cannot be defined" in result.output


class TestReleaseCommands:
    def test_show_dag(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "show-dag")
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].split() == ["GROUP", "RELEASE", "DEPENDENCIES"]
        assert lines[1].split() == ["1", "data/db"]
        assert lines[2].split() == ["2", "apps/api", "data/db"]

    def test_show_dag_batches(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "show-dag", "--batches")
        assert result.exit_code == 0, result.output
        assert result.output.splitlines()[2].split() == ["2", "apps/api"]

    def test_list_with_selector(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "-l", "tier=data", "list")
        assert result.exit_code == 0, result.output
        rows = result.output.splitlines()[1:]
        assert [r.split()[0] for r in rows] == ["db"]

    def test_sync(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "sync", "--set", "a=b")
        assert result.exit_code == 0, result.output
        ups = fake_helm.commands("upgrade", "--install")
        assert [c[2] for c in ups] == ["db", "api"]
        assert all(c[-2:] == ["--set", "a=b"] for c in ups)
        assert "SUCCESS" in result.output

    def test_namespace_override(self, tmp_path: Path, fake_helm: FakeRunner) -> None:
        p = tmp_path / "chartfleet.yaml"
        p.write_text("releases:\n  - name: a\n    chart: stable/a\n  - name: b\n    chart: stable/b\n    needs: [a]\n")
        result = invoke("--file", str(p), "-n", "ci", "sync")
        assert result.exit_code == 0, result.output
        ups = fake_helm.commands("upgrade", "--install")
        assert [c[2] for c in ups] == ["a", "b"]
        assert all(c[4:6] == ["--namespace", "ci"] for c in ups)

    def test_helm_exit_code_is_passed_through(self, state_file: str, fake_helm: FakeRunner) -> None:
        fake_helm.on("upgrade", "--install", "db", rc=3, stderr="rendering failed")
        result = invoke("--file", state_file, "sync")
        assert result.exit_code == 3
        assert "rendering failed" in result.output

    def test_selector_with_unmet_needs(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "-l", "name=api", "sync")
        assert result.exit_code == 1
        assert '--selector name=db' in result.output

    def test_undefined_needs(self, tmp_path: Path, fake_helm: FakeRunner) -> None:
        p = tmp_path / "chartfleet.yaml"
        p.write_text("releases:\n  - name: api\n    chart: stable/api\n    needs: [db]\n")
        result = invoke("--file", str(p), "show-dag")
        assert result.exit_code == 1
        assert 'depend(s) on an undefined release "db"' in result.output

    def test_diff_detailed_exitcode(self, state_file: str, fake_helm: FakeRunner) -> None:
        fake_helm.on("diff", rc=2, stdout="~ replicas")

        plain = invoke("--file", state_file, "diff")
        detailed = invoke("--file", state_file, "diff", "--detailed-exitcode")

        assert plain.exit_code == 0, plain.output
        assert detailed.exit_code == 2
        assert "~ replicas" in detailed.output

    def test_diff_without_changes(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "diff", "--detailed-exitcode")
        assert result.exit_code == 0, result.output

    def test_fetch_requires_output_dir(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "fetch")
        assert result.exit_code == 2
        assert "--output-dir" in result.output

    def test_destroy(self, state_file: str, fake_helm: FakeRunner) -> None:
        fake_helm.on("list", stdout="x\n")
        result = invoke("--file", state_file, "destroy")
        assert result.exit_code == 0, result.output
        assert [c[1] for c in fake_helm.commands("uninstall")] == ["api", "db"]

    def test_helm_binary(self, state_file: str, fake_helm: FakeRunner) -> None:
        result = invoke("--file", state_file, "--helm-binary", "/opt/helm3", "sync")
        assert result.exit_code == 0, result.output
        assert fake_helm.calls[0][0] == "/opt/helm3"


class TestCacheCommands:
    def test_info_and_cleanup(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        root = tmp_path / "cache"
        monkeypatch.setenv("CHARTFLEET_CACHE_HOME", str(root))

        empty = invoke("cache", "info")
        assert empty.exit_code == 0
        assert "Cache is empty" in empty.output

        write_chart(root / "ns" / "app")
        info = invoke("cache", "info")
        assert "ns" in info.output.splitlines()[-1]

        cleanup = invoke("cache", "cleanup")
        assert cleanup.exit_code == 0
        assert not root.exists()
