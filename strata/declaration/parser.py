"""
Declaration Parser - YAML resource declarations.

File layout:

    variables:
      vpc_cidr:
        type: string
        default: 10.0.0.0/16
    resources:
      network:
        ci:
          cidr_block: ${var.vpc_cidr}
    outputs:
      network_id:
        value: ${network.ci.id}

A path may be a single file or a directory; directory files are read
in name order and merged. Variable references are substituted here,
resource references are left for the graph builder and applier.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from strata.config.constants import DECLARATION_SUFFIXES, VAR_ENV_PREFIX
from strata.core.exceptions import ParseError
from strata.declaration.expressions import IDENTIFIER_RE, KEEP, Reference, references, substitute
from strata.schema.registry import TYPE_CHECKS, matches_type

TOP_LEVEL_KEYS = frozenset({"variables", "resources", "outputs"})
VARIABLE_KEYS = frozenset({"type", "default", "description", "sensitive"})
OUTPUT_KEYS = frozenset({"value", "description", "sensitive"})
META_ATTRIBUTES = frozenset({"depends_on"})


class UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


@dataclass
class VariableDecl:
    """A typed input variable."""

    name: str
    type: str = "string"
    default: Any = None
    description: str = ""
    sensitive: bool = False


@dataclass
class ResourceBlock:
    """A declared resource before graph validation."""

    kind: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    source: str = ""

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass
class OutputDecl:
    """A named value exported after apply."""

    name: str
    value: Any
    description: str = ""
    sensitive: bool = False

    @property
    def references(self) -> list[Reference]:
        return references(self.value)


@dataclass
class Declaration:
    """Merged content of all declaration files."""

    variables: dict[str, VariableDecl] = field(default_factory=dict)
    resources: dict[str, ResourceBlock] = field(default_factory=dict)
    outputs: dict[str, OutputDecl] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)


def collect_files(path: Path | str) -> list[Path]:
    """Declaration files under a path, in name order."""
    path = Path(path)
    if path.is_file():
        return [path]
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.is_file() and p.suffix in DECLARATION_SUFFIXES)
        if not files:
            raise ParseError(f"No declaration files found in {path}", source=str(path))
        return files
    raise ParseError(f"Declaration path not found: {path}", source=str(path))


def read_yaml(path: Path) -> Any:
    """Load one YAML file, rejecting duplicate keys."""
    try:
        with path.open(encoding="utf-8") as f:
            return yaml.load(f, Loader=UniqueKeyLoader)  # noqa: S506 - SafeLoader subclass
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", source=str(path)) from e
    except OSError as e:
        raise ParseError(f"Cannot read file: {e}", source=str(path)) from e


def _require_mapping(value: Any, what: str, source: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{what} must be a mapping, got {type(value).__name__}", source=source)
    return value


def _check_identifier(name: Any, what: str, source: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise ParseError(f"Invalid {what} name {name!r}", source=source)
    return name


def _parse_variables(raw: Any, source: str) -> list[VariableDecl]:
    variables = []
    for name, body in _require_mapping(raw, "variables", source).items():
        _check_identifier(name, "variable", source)
        body = _require_mapping(body, f"variable '{name}'", source)
        unknown = set(body) - VARIABLE_KEYS
        if unknown:
            raise ParseError(
                f"variable '{name}': unknown key(s) {', '.join(sorted(unknown))}", source=source
            )
        var_type = body.get("type", "string")
        if var_type not in TYPE_CHECKS:
            raise ParseError(
                f"variable '{name}': unknown type '{var_type}' (expected one of {sorted(TYPE_CHECKS)})",
                source=source,
            )
        default = body.get("default")
        if default is not None and not matches_type(default, var_type):
            raise ParseError(f"variable '{name}': default does not match type {var_type}", source=source)
        variables.append(
            VariableDecl(
                name=name,
                type=var_type,
                default=default,
                description=str(body.get("description", "")),
                sensitive=bool(body.get("sensitive", False)),
            )
        )
    return variables


def _parse_resources(raw: Any, source: str) -> list[ResourceBlock]:
    blocks = []
    for kind, named in _require_mapping(raw, "resources", source).items():
        _check_identifier(kind, "resource kind", source)
        if kind == "var":
            raise ParseError("'var' is reserved and cannot be a resource kind", source=source)
        for name, body in _require_mapping(named, f"resources.{kind}", source).items():
            _check_identifier(name, "resource", source)
            attributes = dict(_require_mapping(body, f"{kind}.{name}", source))
            depends_on = attributes.pop("depends_on", None) or []
            if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
                raise ParseError(f"{kind}.{name}: depends_on must be a list of addresses", source=source)
            for dep in depends_on:
                if len(dep.split(".")) != 2:
                    raise ParseError(
                        f"{kind}.{name}: depends_on entry '{dep}' must be KIND.NAME", source=source
                    )
            # Surface malformed expressions at parse time
            references(attributes)
            blocks.append(
                ResourceBlock(
                    kind=kind, name=name, attributes=attributes, depends_on=depends_on, source=source
                )
            )
    return blocks


def _parse_outputs(raw: Any, source: str) -> list[OutputDecl]:
    outputs = []
    for name, body in _require_mapping(raw, "outputs", source).items():
        _check_identifier(name, "output", source)
        body = _require_mapping(body, f"output '{name}'", source)
        unknown = set(body) - OUTPUT_KEYS
        if unknown:
            raise ParseError(f"output '{name}': unknown key(s) {', '.join(sorted(unknown))}", source=source)
        if "value" not in body:
            raise ParseError(f"output '{name}': missing 'value'", source=source)
        references(body["value"])
        outputs.append(
            OutputDecl(
                name=name,
                value=body["value"],
                description=str(body.get("description", "")),
                sensitive=bool(body.get("sensitive", False)),
            )
        )
    return outputs


def coerce_value(raw: Any, var: VariableDecl) -> Any:
    """
    Convert a supplied variable value to the variable's type.

    String inputs (CLI or environment) are parsed as YAML scalars or
    collections for non-string types.
    """
    value = raw
    if isinstance(raw, str) and var.type != "string":
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ParseError(f"variable '{var.name}': cannot parse {raw!r} as {var.type}") from e
    if not matches_type(value, var.type):
        raise ParseError(
            f"variable '{var.name}': expected {var.type}, got {type(value).__name__}",
            details={"variable": var.name},
        )
    return value


def resolve_variables(
    variables: Mapping[str, VariableDecl],
    supplied: Mapping[str, Any],
    env: Mapping[str, str],
) -> dict[str, Any]:
    """
    Final value of every declared variable.

    Precedence: supplied values, then STRATA_VAR_<name> environment
    variables, then defaults.

    Raises:
        ParseError: For undeclared supplied values, missing values or type mismatches
    """
    undeclared = sorted(set(supplied) - set(variables))
    if undeclared:
        raise ParseError(f"Value supplied for undeclared variable(s): {', '.join(undeclared)}")

    values: dict[str, Any] = {}
    for name, var in variables.items():
        if name in supplied:
            values[name] = coerce_value(supplied[name], var)
        elif f"{VAR_ENV_PREFIX}{name}" in env:
            values[name] = coerce_value(env[f"{VAR_ENV_PREFIX}{name}"], var)
        elif var.default is not None:
            values[name] = var.default
        else:
            raise ParseError(f"variable '{name}' has no value and no default", details={"variable": name})
    return values


def load_var_file(path: Path | str) -> dict[str, Any]:
    """Read a YAML mapping of variable values."""
    path = Path(path)
    data = read_yaml(path)
    return dict(_require_mapping(data, "variable file", str(path)))


def parse_documents(documents: list[tuple[str, Any]]) -> Declaration:
    """
    Merge parsed YAML documents into one Declaration (variables not yet applied).

    Args:
        documents: (source name, loaded YAML) pairs
    """
    declaration = Declaration()
    for source, data in documents:
        data = _require_mapping(data, "declaration file", source)
        unknown = set(data) - TOP_LEVEL_KEYS
        if unknown:
            raise ParseError(
                f"Unknown top-level key(s) {', '.join(sorted(unknown))} "
                f"(expected {', '.join(sorted(TOP_LEVEL_KEYS))})",
                source=source,
            )

        for var in _parse_variables(data.get("variables"), source):
            if var.name in declaration.variables:
                raise ParseError(f"variable '{var.name}' declared more than once", source=source)
            declaration.variables[var.name] = var

        for block in _parse_resources(data.get("resources"), source):
            existing = declaration.resources.get(block.address)
            if existing is not None:
                raise ParseError(
                    f"{block.address} declared more than once (also in {existing.source})",
                    source=source,
                    details={"address": block.address},
                )
            declaration.resources[block.address] = block

        for output in _parse_outputs(data.get("outputs"), source):
            if output.name in declaration.outputs:
                raise ParseError(f"output '{output.name}' declared more than once", source=source)
            declaration.outputs[output.name] = output

        declaration.sources.append(source)
    return declaration


def apply_variables(declaration: Declaration, values: Mapping[str, Any]) -> Declaration:
    """Substitute ${var.*} references in resources and outputs."""

    def resolve(ref: Reference) -> Any:
        if not ref.is_variable:
            return KEEP
        if ref.name not in values:
            raise ParseError(f"Reference to undeclared variable '{ref.name}'", details={"variable": ref.name})
        return values[ref.name]

    for block in declaration.resources.values():
        try:
            block.attributes = substitute(block.attributes, resolve, final=False)
        except ParseError as e:
            raise ParseError(f"{block.address}: {e.message}", source=block.source, details=e.details) from e
    for output in declaration.outputs.values():
        output.value = substitute(output.value, resolve, final=False)
    declaration.values = dict(values)
    return declaration


def load_declarations(
    path: Path | str,
    variables: Mapping[str, Any] | None = None,
    var_files: list[Path | str] | None = None,
    env: Mapping[str, str] | None = None,
) -> Declaration:
    """
    Load and merge declaration files, resolving variables.

    Args:
        path: Declaration file or directory
        variables: Values supplied on the command line (highest precedence)
        var_files: YAML files of variable values
        env: Environment for STRATA_VAR_* lookups (default: os.environ)

    Returns:
        Declaration with variable references substituted

    Raises:
        ParseError: On any malformed input
    """
    env = os.environ if env is None else env
    files = collect_files(path)
    declaration = parse_documents([(str(f), read_yaml(f)) for f in files])

    supplied: dict[str, Any] = {}
    for var_file in var_files or []:
        supplied.update(load_var_file(var_file))
    supplied.update(variables or {})

    values = resolve_variables(declaration.variables, supplied, env)
    apply_variables(declaration, values)
    logger.debug(
        f"Loaded {len(declaration.resources)} resources, {len(declaration.outputs)} outputs "
        f"from {len(files)} file(s)"
    )
    return declaration
