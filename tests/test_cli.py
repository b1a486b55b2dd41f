"""
Tests for the command line interface.

Every invocation runs against the local provider with a file-backed
cloud, so state and remote resources persist between commands.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from strata.cli import cli

CYCLE = """
resources:
  network:
    a:
      cidr_block: 10.0.0.0/16
  subnet:
    x:
      network_id: ${network.a.id}
      cidr_block: 10.0.1.0/24
      depends_on: [subnet.y]
    y:
      network_id: ${network.a.id}
      cidr_block: 10.0.2.0/24
      depends_on: [subnet.x]
"""


@pytest.fixture
def invoke(tmp_path: Path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "provider:\n"
        "  name: local\n"
        f"  local_path: {tmp_path / 'cloud.json'}\n"
        "apply:\n"
        "  initial_delay: 0\n"
        "  max_delay: 0\n"
        "logging:\n"
        f"  log_dir: {tmp_path / 'logs'}\n"
        "  console_level: critical\n"
    )
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(
            cli, ["--config", str(config), "--state", str(tmp_path / "state.db"), *args], catch_exceptions=False
        )

    return _invoke


def test_plan_apply_lifecycle(invoke, network_and_subnet: Path) -> None:
    path = str(network_and_subnet)

    result = invoke("plan", path)
    assert result.exit_code == 2
    assert "network.main" in result.output
    assert "2 to create" in result.output

    result = invoke("apply", path)
    assert result.exit_code == 0
    assert "Apply complete" in result.output

    result = invoke("plan", path)
    assert result.exit_code == 0
    assert "No changes" in result.output

    result = invoke("output", "subnet_id")
    assert result.exit_code == 0
    assert result.output.strip().startswith("subnet-")

    result = invoke("--json", "state", "list")
    assert [r["address"] for r in json.loads(result.output)] == ["network.main", "subnet.public"]

    result = invoke("--json", "state", "show", "subnet.public")
    shown = json.loads(result.output)
    assert shown["attributes"]["cidr_block"] == "10.0.1.0/24"
    assert shown["dependencies"] == ["network.main"]

    result = invoke("destroy")
    assert result.exit_code == 0
    assert invoke("--json", "state", "list").output.strip() == "[]"
    assert invoke("plan", path).exit_code == 2


def test_plan_json(invoke, network_and_subnet: Path) -> None:
    result = invoke("--json", "plan", str(network_and_subnet))

    assert result.exit_code == 2
    data = json.loads(result.output)
    assert data["has_changes"]
    assert [(c["address"], c["operation"]) for c in data["changes"]] == [
        ("network.main", "create"),
        ("subnet.public", "create"),
    ]


def test_failed_apply_exits_1(invoke, write_declaration) -> None:
    path = write_declaration(
        """
        resources:
          network:
            main: {cidr_block: 10.0.0.0/16}
          subnet:
            orphan: {network_id: vpc-missing, cidr_block: 10.9.0.0/24}
        """
    )

    result = invoke("--json", "apply", str(path))

    assert result.exit_code == 1
    data = json.loads(result.output)
    assert not data["result"]["success"]
    assert [f["address"] for f in data["result"]["failed"]] == ["subnet.orphan"]
    assert [r["address"] for r in json.loads(invoke("--json", "state", "list").output)] == ["network.main"]


def test_cycle_is_error(invoke, write_declaration) -> None:
    path = str(write_declaration(CYCLE))

    result = invoke("--json", "plan", path)
    assert result.exit_code == 1
    error = json.loads(result.output)
    assert error["error"] == "CycleError"

    assert invoke("validate", path).exit_code == 1


def test_validate_and_graph(invoke, network_and_subnet: Path) -> None:
    result = invoke("validate", str(network_and_subnet))
    assert result.exit_code == 0
    assert "2 resource(s), 1 output(s)" in result.output

    result = invoke("--json", "graph", str(network_and_subnet))
    assert json.loads(result.output)["order"] == ["network.main", "subnet.public"]


def test_unknown_output(invoke) -> None:
    result = invoke("output", "nothing")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_variables(invoke, write_declaration) -> None:
    path = write_declaration(
        """
        variables:
          cidr: {}
        resources:
          network:
            main:
              cidr_block: ${var.cidr}
        """
    )

    assert invoke("plan", str(path)).exit_code == 1
    assert invoke("plan", str(path), "--var", "cidr=10.4.0.0/16").exit_code == 2
    assert invoke("plan", str(path), "--var", "cidr").exit_code == 2


def test_missing_config_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "state", "list"])
    assert result.exit_code == 1
