"""
Expression references inside declared values.

Two reference forms are recognised inside ``${...}``:

- ``var.NAME``             a declared variable
- ``KIND.NAME.ATTRIBUTE``  an attribute or output of another resource

A string made of exactly one expression evaluates to the referenced
value with its own type. Expressions embedded in a longer string are
interpolated as text. ``$${`` produces a literal ``${``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from strata.core.exceptions import ParseError
from strata.core.types import UNKNOWN

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

# Returned by a resolver to leave an expression untouched
KEEP = object()


@dataclass(frozen=True)
class Reference:
    """A parsed ``${...}`` reference."""

    root: str
    name: str
    attribute: str | None = None

    @property
    def is_variable(self) -> bool:
        return self.root == "var"

    @property
    def address(self) -> str:
        """Resource address (``kind.name``) or ``var.name``."""
        return f"{self.root}.{self.name}"

    @property
    def text(self) -> str:
        if self.attribute is None:
            return self.address
        return f"{self.address}.{self.attribute}"

    def __str__(self) -> str:
        return "${" + self.text + "}"


def parse_reference(text: str) -> Reference:
    """
    Parse the inside of a ``${...}`` expression.

    Raises:
        ParseError: If the expression is not a variable or resource reference
    """
    parts = text.strip().split(".")
    if not all(IDENTIFIER_RE.match(p) for p in parts):
        raise ParseError(f"Malformed expression '${{{text}}}'", details={"expression": text})

    if parts[0] == "var":
        if len(parts) != 2:
            raise ParseError(
                f"Variable reference must be var.NAME, got '${{{text}}}'",
                details={"expression": text},
            )
        return Reference(root="var", name=parts[1])

    if len(parts) != 3:
        raise ParseError(
            f"Resource reference must be KIND.NAME.ATTRIBUTE, got '${{{text}}}'",
            details={"expression": text},
        )
    return Reference(root=parts[0], name=parts[1], attribute=parts[2])


def scan(text: str) -> list[str | Reference]:
    """
    Split a string into literal segments and references.

    Raises:
        ParseError: On unterminated or malformed expressions
    """
    parts: list[str | Reference] = []
    buf: list[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = text.find("}", i + 2)
            if end == -1:
                raise ParseError(f"Unterminated expression in {text!r}", details={"value": text})
            if buf:
                parts.append("".join(buf))
                buf = []
            parts.append(parse_reference(text[i + 2 : end]))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append("".join(buf))
    return parts


def _escape(text: str) -> str:
    return text.replace("${", "$${")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def references(value: Any) -> list[Reference]:
    """All references found in a (possibly nested) value, in order."""
    found: list[Reference] = []
    if isinstance(value, str):
        found.extend(p for p in scan(value) if isinstance(p, Reference))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(references(item))
    elif isinstance(value, list):
        for item in value:
            found.extend(references(item))
    return found


def is_literal(value: Any) -> bool:
    """True if the value contains no references."""
    return not references(value)


def _escape_value(value: Any) -> Any:
    if isinstance(value, str):
        return _escape(value)
    if isinstance(value, dict):
        return {k: _escape_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_escape_value(v) for v in value]
    return value


def substitute(value: Any, resolve: Callable[[Reference], Any], final: bool = True) -> Any:
    """
    Replace references in a (possibly nested) value.

    Args:
        value: Declared value
        resolve: Returns the value for a reference, KEEP to leave the
            expression in place, or UNKNOWN when not yet known
        final: Unescape ``$${`` in the result. Passes that leave other
            references for later must keep the escapes, otherwise the
            literal ``${`` is read back as an expression.

    Returns:
        The substituted value. Strings interpolating an UNKNOWN value
        become UNKNOWN as a whole.
    """
    if isinstance(value, dict):
        return {k: substitute(v, resolve, final) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, resolve, final) for v in value]
    if not isinstance(value, str):
        return value

    parts = scan(value)
    if len(parts) == 1 and isinstance(parts[0], Reference):
        resolved = resolve(parts[0])
        if resolved is KEEP:
            return value
        return resolved if final else _escape_value(resolved)

    out: list[str] = []
    for part in parts:
        if isinstance(part, str):
            out.append(_escape(part))
            continue
        resolved = resolve(part)
        if resolved is KEEP:
            out.append(str(part))
        elif resolved == UNKNOWN:
            return UNKNOWN
        else:
            out.append(_escape(_stringify(resolved)))

    rendered = "".join(out)
    if not final:
        return rendered
    # No expressions left: unescape so the stored value is the literal text
    if not any(isinstance(p, Reference) for p in scan(rendered)):
        return "".join(p for p in scan(rendered) if isinstance(p, str))
    return rendered
