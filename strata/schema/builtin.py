"""
Built-in resource kinds.

Network and compute building blocks needed to host a single server
(VPC-style network, subnets, gateway, routing, firewall, key pair,
instance and static IP).
"""

from __future__ import annotations

from strata.schema.registry import AttributeSpec, ResourceSchema, SchemaRegistry, UniqueConstraint


def _attrs(*specs: AttributeSpec) -> dict[str, AttributeSpec]:
    return {spec.name: spec for spec in specs}


TAGS = AttributeSpec("tags", type="map", default=None)

NETWORK = ResourceSchema(
    kind="network",
    description="Isolated virtual network",
    attributes=_attrs(
        AttributeSpec("cidr_block", required=True, updatable=False),
        AttributeSpec("enable_dns_hostnames", type="bool", default=True),
        TAGS,
    ),
    computed=("id", "default_security_group_id"),
    unique=(UniqueConstraint("cidr_block"),),
)

SUBNET = ResourceSchema(
    kind="subnet",
    description="Address range inside a network",
    attributes=_attrs(
        AttributeSpec("network_id", required=True, updatable=False),
        AttributeSpec("cidr_block", required=True, updatable=False),
        AttributeSpec("availability_zone", updatable=False),
        AttributeSpec("map_public_ip_on_launch", type="bool", default=False),
        TAGS,
    ),
    computed=("id", "availability_zone"),
    unique=(UniqueConstraint("cidr_block", scope=("network_id",)),),
)

INTERNET_GATEWAY = ResourceSchema(
    kind="internet_gateway",
    description="Gateway attached to a network for public traffic",
    attributes=_attrs(
        AttributeSpec("network_id", required=True, updatable=False),
        TAGS,
    ),
    unique=(UniqueConstraint("network_id"),),
)

ROUTE_TABLE = ResourceSchema(
    kind="route_table",
    description="Route table with a default route, associated with subnets",
    attributes=_attrs(
        AttributeSpec("network_id", required=True, updatable=False),
        AttributeSpec("gateway_id", updatable=False),
        AttributeSpec("destination_cidr", default="0.0.0.0/0", updatable=False),
        AttributeSpec("subnet_ids", type="list", updatable=False),
        TAGS,
    ),
)

SECURITY_GROUP = ResourceSchema(
    kind="security_group",
    description="Stateful firewall rules",
    attributes=_attrs(
        AttributeSpec("network_id", required=True, updatable=False),
        AttributeSpec("group_name", required=True, updatable=False),
        AttributeSpec("description", default="Managed by strata", updatable=False),
        AttributeSpec("ingress", type="list", updatable=False),
        TAGS,
    ),
    unique=(UniqueConstraint("group_name", scope=("network_id",)),),
)

KEY_PAIR = ResourceSchema(
    kind="key_pair",
    description="SSH public key registered with the provider",
    attributes=_attrs(
        AttributeSpec("key_name", required=True, updatable=False),
        AttributeSpec("public_key", required=True, updatable=False),
        TAGS,
    ),
    computed=("id", "fingerprint"),
    unique=(UniqueConstraint("key_name"),),
)

INSTANCE = ResourceSchema(
    kind="instance",
    description="Virtual machine",
    attributes=_attrs(
        AttributeSpec("image_id", required=True, updatable=False),
        AttributeSpec("instance_type", required=True, updatable=False),
        AttributeSpec("subnet_id", required=True, updatable=False),
        AttributeSpec("security_group_ids", type="list"),
        AttributeSpec("key_name", updatable=False),
        AttributeSpec("user_data", updatable=False),
        AttributeSpec("associate_public_ip", type="bool", default=True, updatable=False),
        TAGS,
    ),
    computed=("id", "public_ip", "private_ip"),
)

ELASTIC_IP = ResourceSchema(
    kind="elastic_ip",
    description="Static public address, optionally bound to an instance",
    attributes=_attrs(
        AttributeSpec("instance_id"),
        TAGS,
    ),
    computed=("id", "public_ip"),
)

BUILTIN_SCHEMAS = (
    NETWORK,
    SUBNET,
    INTERNET_GATEWAY,
    ROUTE_TABLE,
    SECURITY_GROUP,
    KEY_PAIR,
    INSTANCE,
    ELASTIC_IP,
)


def default_registry() -> SchemaRegistry:
    """Registry preloaded with the built-in kinds."""
    registry = SchemaRegistry()
    registry.register_all(BUILTIN_SCHEMAS)
    return registry
