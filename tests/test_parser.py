"""
Tests for declaration parsing.

Tests:
- File and directory loading
- Variables: defaults, precedence, type coercion
- Rejection of malformed declarations
"""

from __future__ import annotations

import pytest

from strata.core.exceptions import ParseError
from strata.declaration.parser import load_declarations

VARIABLES = """
variables:
  cidr:
    type: string
    default: 10.0.0.0/16
  workers:
    type: number
    default: 2
  public:
    type: bool
    default: false
resources:
  network:
    main:
      cidr_block: ${var.cidr}
      tags:
        Workers: "n=${var.workers}"
  subnet:
    a:
      network_id: ${network.main.id}
      cidr_block: 10.0.1.0/24
      map_public_ip_on_launch: ${var.public}
"""


class TestLoad:
    def test_variables_substituted_and_references_kept(self, write_declaration) -> None:
        decl = load_declarations(write_declaration(VARIABLES), env={})

        network = decl.resources["network.main"]
        subnet = decl.resources["subnet.a"]
        assert network.attributes["cidr_block"] == "10.0.0.0/16"
        assert network.attributes["tags"] == {"Workers": "n=2"}
        assert subnet.attributes["network_id"] == "${network.main.id}"
        assert subnet.attributes["map_public_ip_on_launch"] is False

    def test_directory_files_merged(self, write_declaration) -> None:
        write_declaration("resources:\n  network:\n    a:\n      cidr_block: 10.1.0.0/16\n", "a.yaml")
        path = write_declaration("resources:\n  network:\n    b:\n      cidr_block: 10.2.0.0/16\n", "b.yml")
        decl = load_declarations(path, env={})
        assert sorted(decl.resources) == ["network.a", "network.b"]
        assert len(decl.sources) == 2

    def test_same_address_in_two_files(self, write_declaration) -> None:
        write_declaration("resources:\n  network:\n    a:\n      cidr_block: 10.1.0.0/16\n", "a.yaml")
        path = write_declaration("resources:\n  network:\n    a:\n      cidr_block: 10.2.0.0/16\n", "b.yaml")
        with pytest.raises(ParseError, match="declared more than once"):
            load_declarations(path, env={})

    def test_missing_path(self, tmp_path) -> None:
        with pytest.raises(ParseError, match="not found"):
            load_declarations(tmp_path / "nope")


class TestVariables:
    def test_precedence(self, write_declaration, tmp_path) -> None:
        path = write_declaration(VARIABLES)
        var_file = tmp_path / "vars.yaml"
        var_file.write_text("cidr: 10.5.0.0/16\nworkers: 7\n")

        decl = load_declarations(
            path,
            variables={"cidr": "10.9.0.0/16"},
            var_files=[var_file],
            env={"STRATA_VAR_workers": "9", "STRATA_VAR_public": "true"},
        )
        assert decl.values == {"cidr": "10.9.0.0/16", "workers": 7, "public": True}

    def test_cli_strings_coerced(self, write_declaration) -> None:
        decl = load_declarations(write_declaration(VARIABLES), variables={"workers": "4"}, env={})
        assert decl.values["workers"] == 4

    def test_type_mismatch(self, write_declaration) -> None:
        with pytest.raises(ParseError, match="expected number"):
            load_declarations(write_declaration(VARIABLES), variables={"workers": "many"}, env={})

    def test_missing_value(self, write_declaration) -> None:
        path = write_declaration("variables:\n  region:\n    type: string\n")
        with pytest.raises(ParseError, match="no value"):
            load_declarations(path, env={})

    def test_undeclared_value(self, write_declaration) -> None:
        with pytest.raises(ParseError, match="undeclared"):
            load_declarations(write_declaration(VARIABLES), variables={"nope": "1"}, env={})

    def test_reference_to_undeclared_variable(self, write_declaration) -> None:
        path = write_declaration("resources:\n  network:\n    a:\n      cidr_block: ${var.missing}\n")
        with pytest.raises(ParseError, match="undeclared variable"):
            load_declarations(path, env={})

    def test_escape_survives_variable_pass(self, write_declaration) -> None:
        path = write_declaration(
            """
            variables:
              env: {default: ci}
            resources:
              network:
                main:
                  cidr_block: 10.0.0.0/16
                  tags: {Home: "home is $${HOME}", Env: "${var.env} $${ENV}"}
            """
        )

        decl = load_declarations(path, env={})

        assert decl.resources["network.main"].attributes["tags"] == {"Home": "home is $${HOME}", "Env": "ci $${ENV}"}

    def test_variable_value_is_not_an_expression(self, write_declaration) -> None:
        path = write_declaration(
            "variables:\n  script: {}\nresources:\n  network:\n    a:\n"
            "      cidr_block: 10.1.0.0/16\n      tags: {Run: '${var.script}'}\n"
        )

        decl = load_declarations(path, variables={"script": "echo ${HOME}"}, env={})

        assert decl.resources["network.a"].attributes["tags"] == {"Run": "echo $${HOME}"}


class TestMalformed:
    @pytest.mark.parametrize(
        "content, message",
        [
            ("resources:\n  network:\n    a: {cidr_block: x}\n    a: {cidr_block: y}\n", "duplicate key"),
            ("resource:\n  network: {}\n", "Unknown top-level"),
            ("resources:\n  network:\n    a:\n      cidr_block: ${network.b\n", "Unterminated"),
            ("resources:\n  var:\n    a: {}\n", "reserved"),
            ("resources:\n  network:\n    a:\n      depends_on: subnet.b\n", "depends_on"),
            ("outputs:\n  x:\n    description: no value\n", "missing 'value'"),
            ("variables:\n  x:\n    type: integer\n", "unknown type"),
            ("- just\n- a list\n", "must be a mapping"),
        ],
    )
    def test_rejected(self, write_declaration, content: str, message: str) -> None:
        with pytest.raises(ParseError, match=message):
            load_declarations(write_declaration(content), env={})
