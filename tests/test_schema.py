"""
Tests for the resource schema registry.
"""

from __future__ import annotations

import pytest

from strata.core.exceptions import ParseError
from strata.declaration.expressions import is_literal
from strata.schema.registry import AttributeSpec, ResourceSchema, SchemaRegistry, matches_type


def test_builtin_kinds(registry: SchemaRegistry) -> None:
    assert registry.kinds() == [
        "elastic_ip",
        "instance",
        "internet_gateway",
        "key_pair",
        "network",
        "route_table",
        "security_group",
        "subnet",
    ]


def test_unknown_kind(registry: SchemaRegistry) -> None:
    with pytest.raises(ParseError, match="Unknown resource kind 'database'"):
        registry.get("database")


@pytest.mark.parametrize(
    "value, type_name, expected",
    [
        ("x", "string", True),
        (3, "number", True),
        (2.5, "number", True),
        (True, "number", False),
        (True, "bool", True),
        ([1], "list", True),
        ({"a": 1}, "map", True),
        ("x", "map", False),
        (object(), "any", True),
    ],
)
def test_matches_type(value, type_name: str, expected: bool) -> None:
    assert matches_type(value, type_name) is expected


class TestValidate:
    def test_missing_required(self, registry: SchemaRegistry) -> None:
        with pytest.raises(ParseError, match="missing required attribute 'cidr_block'"):
            registry.get("network").validate("network.a", {})

    def test_unknown_attribute(self, registry: SchemaRegistry) -> None:
        with pytest.raises(ParseError, match="unknown attribute"):
            registry.get("network").validate("network.a", {"cidr_block": "10.0.0.0/16", "colour": "red"})

    def test_type_mismatch(self, registry: SchemaRegistry) -> None:
        with pytest.raises(ParseError, match="must be bool"):
            registry.get("network").validate("network.a", {"cidr_block": "10.0.0.0/16", "enable_dns_hostnames": "yes"})

    def test_expressions_not_type_checked(self, registry: SchemaRegistry) -> None:
        registry.get("instance").validate(
            "instance.a",
            {
                "image_id": "ami-1",
                "instance_type": "t3.micro",
                "subnet_id": "${subnet.a.id}",
                "security_group_ids": "${var.groups}",
            },
            is_literal=is_literal,
        )


def test_defaults_and_exposure(registry: SchemaRegistry) -> None:
    schema = registry.get("security_group")
    attrs = schema.with_defaults({"network_id": "vpc-1", "group_name": "web"})
    assert attrs["description"] == "Managed by strata"
    assert schema.exposes("id")
    assert schema.exposes("group_name")
    assert not schema.exposes("public_ip")
    assert schema.is_updatable("tags")
    assert not schema.is_updatable("group_name")


def test_register_overwrites() -> None:
    registry = SchemaRegistry()
    registry.register(ResourceSchema(kind="bucket", attributes={"name": AttributeSpec("name", required=True)}))
    registry.register(ResourceSchema(kind="bucket", attributes={}))
    assert len(registry) == 1
    assert registry.get("bucket").attributes == {}
