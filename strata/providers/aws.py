"""
AWS provider - EC2/VPC resources through boto3.

Kind mapping:
    network -> VPC, subnet -> Subnet, internet_gateway -> Internet Gateway,
    route_table -> Route Table (+ default route, subnet associations),
    security_group -> Security Group (+ ingress rules),
    key_pair -> imported Key Pair, instance -> EC2 instance,
    elastic_ip -> Elastic IP (+ association)

Every resource is tagged with ``strata:address`` so an interrupted run
can find what it created.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)
from loguru import logger

from strata.config.constants import ADDRESS_TAG
from strata.core.exceptions import ProviderAPIError, TerminalProviderError, TransientProviderError
from strata.providers.base import Provider, RemoteResource

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
})

# kind -> EC2 TagSpecification resource type
RESOURCE_TYPES = {
    "network": "vpc",
    "subnet": "subnet",
    "internet_gateway": "internet-gateway",
    "route_table": "route-table",
    "security_group": "security-group",
    "key_pair": "key-pair",
    "instance": "instance",
    "elastic_ip": "elastic-ip",
}

# kind -> (describe method, id parameter, response key, not-found error code)
DESCRIBERS: dict[str, tuple[str, str, str, str]] = {
    "network": ("describe_vpcs", "VpcIds", "Vpcs", "InvalidVpcID.NotFound"),
    "subnet": ("describe_subnets", "SubnetIds", "Subnets", "InvalidSubnetID.NotFound"),
    "internet_gateway": (
        "describe_internet_gateways",
        "InternetGatewayIds",
        "InternetGateways",
        "InvalidInternetGatewayID.NotFound",
    ),
    "route_table": ("describe_route_tables", "RouteTableIds", "RouteTables", "InvalidRouteTableID.NotFound"),
    "security_group": ("describe_security_groups", "GroupIds", "SecurityGroups", "InvalidGroup.NotFound"),
    "key_pair": ("describe_key_pairs", "KeyPairIds", "KeyPairs", "InvalidKeyPair.NotFound"),
    "instance": ("describe_instances", "InstanceIds", "Reservations", "InvalidInstanceID.NotFound"),
    "elastic_ip": ("describe_addresses", "AllocationIds", "Addresses", "InvalidAllocationID.NotFound"),
}

ID_FIELDS = {
    "network": "VpcId",
    "subnet": "SubnetId",
    "internet_gateway": "InternetGatewayId",
    "route_table": "RouteTableId",
    "security_group": "GroupId",
    "key_pair": "KeyPairId",
    "instance": "InstanceId",
    "elastic_ip": "AllocationId",
}


def classify_client_error(error: ClientError, operation: str, kind: str) -> TerminalProviderError | TransientProviderError:
    """Map a botocore ClientError to a transient or terminal provider error."""
    err = error.response.get("Error", {})
    code = err.get("Code", "Unknown")
    message = err.get("Message", str(error))
    if code in TRANSIENT_CODES:
        return TransientProviderError(operation, kind, message, code=code)
    return TerminalProviderError(operation, kind, message, code=code)


def _outputs(kind: str, item: dict[str, Any]) -> dict[str, Any]:
    """Computed outputs carried by a describe/create response item."""
    if kind == "subnet":
        return {"availability_zone": item.get("AvailabilityZone")}
    if kind == "key_pair":
        return {"fingerprint": item.get("KeyFingerprint")}
    if kind == "instance":
        return {"public_ip": item.get("PublicIpAddress"), "private_ip": item.get("PrivateIpAddress")}
    if kind == "elastic_ip":
        return {"public_ip": item.get("PublicIp")}
    return {}


class AwsProvider(Provider):
    """EC2 provider."""

    name = "aws"

    def __init__(self, region: str = "us-east-1", profile: str | None = None, client: Any = None):
        """
        Args:
            region: AWS region
            profile: Named credentials profile
            client: Pre-built EC2 client (tests)
        """
        self.region = region
        if client is None:
            session = boto3.session.Session(profile_name=profile, region_name=region)
            client = session.client("ec2")
        self.ec2 = client
        self._creators: dict[str, Callable[..., Any]] = {
            "network": self._create_network,
            "subnet": self._create_subnet,
            "internet_gateway": self._create_internet_gateway,
            "route_table": self._create_route_table,
            "security_group": self._create_security_group,
            "key_pair": self._create_key_pair,
            "instance": self._create_instance,
            "elastic_ip": self._create_elastic_ip,
        }
        self._deleters: dict[str, Callable[..., Any]] = {
            "network": lambda rid: self._call("delete", "network", "delete_vpc", VpcId=rid),
            "subnet": lambda rid: self._call("delete", "subnet", "delete_subnet", SubnetId=rid),
            "internet_gateway": self._delete_internet_gateway,
            "route_table": self._delete_route_table,
            "security_group": lambda rid: self._call(
                "delete", "security_group", "delete_security_group", GroupId=rid
            ),
            "key_pair": lambda rid: self._call("delete", "key_pair", "delete_key_pair", KeyPairId=rid),
            "instance": self._delete_instance,
            "elastic_ip": self._delete_elastic_ip,
        }

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _call(self, operation: str, kind: str, method: str, **params: Any) -> dict[str, Any]:
        """Run a blocking EC2 call in a thread, translating errors."""
        try:
            return await asyncio.to_thread(getattr(self.ec2, method), **params)
        except ClientError as e:
            raise classify_client_error(e, operation, kind) from e
        except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
            raise TransientProviderError(operation, kind, str(e), code=type(e).__name__) from e

    async def _wait(self, kind: str, waiter_name: str, **params: Any) -> None:
        waiter = self.ec2.get_waiter(waiter_name)
        try:
            await asyncio.to_thread(waiter.wait, **params)
        except ClientError as e:
            raise classify_client_error(e, "wait", kind) from e
        except WaiterError as e:
            raise TerminalProviderError("wait", kind, str(e), code="WaiterError") from e

    @staticmethod
    def _tag_spec(kind: str, name: str, tags: dict[str, Any] | None) -> list[dict[str, Any]]:
        merged = {"Name": name, ADDRESS_TAG: f"{kind}.{name}"}
        merged.update({str(k): str(v) for k, v in (tags or {}).items()})
        merged[ADDRESS_TAG] = f"{kind}.{name}"
        return [{
            "ResourceType": RESOURCE_TYPES[kind],
            "Tags": [{"Key": k, "Value": v} for k, v in sorted(merged.items())],
        }]

    @asynccontextmanager
    async def _rollback_on_error(self, kind: str, remote_id: str) -> AsyncIterator[None]:
        """Delete a resource whose follow-up calls failed, then re-raise."""
        try:
            yield
        except ProviderAPIError as e:
            logger.warning(f"aws: {kind} {remote_id} failed after creation ({e.message}), rolling back")
            try:
                await self._deleters[kind](remote_id)
            except ProviderAPIError as rollback_error:
                logger.error(f"aws: rollback of {kind} {remote_id} failed: {rollback_error.message}")
            raise

    def supports(self, kind: str) -> bool:
        return kind in RESOURCE_TYPES

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, kind: str, name: str, attributes: dict[str, Any]) -> RemoteResource:
        creator = self._creators.get(kind)
        if creator is None:
            raise TerminalProviderError("create", kind, "unsupported resource kind")
        logger.info(f"aws: creating {kind}.{name}")
        return await creator(name, attributes)

    async def _create_network(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "network", "create_vpc",
            CidrBlock=attrs["cidr_block"],
            TagSpecifications=self._tag_spec("network", name, attrs.get("tags")),
        )
        vpc = resp["Vpc"]
        async with self._rollback_on_error("network", vpc["VpcId"]):
            if attrs.get("enable_dns_hostnames"):
                await self._call(
                    "create", "network", "modify_vpc_attribute",
                    VpcId=vpc["VpcId"], EnableDnsHostnames={"Value": True},
                )
            return await self._remote("network", vpc)

    async def _network_outputs(self, vpc_id: str) -> dict[str, Any]:
        resp = await self._call(
            "read", "network", "describe_security_groups",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "group-name", "Values": ["default"]},
            ],
        )
        groups = resp.get("SecurityGroups", [])
        return {"default_security_group_id": groups[0]["GroupId"] if groups else None}

    async def _create_subnet(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        params: dict[str, Any] = {
            "VpcId": attrs["network_id"],
            "CidrBlock": attrs["cidr_block"],
            "TagSpecifications": self._tag_spec("subnet", name, attrs.get("tags")),
        }
        if attrs.get("availability_zone"):
            params["AvailabilityZone"] = attrs["availability_zone"]
        resp = await self._call("create", "subnet", "create_subnet", **params)
        subnet = resp["Subnet"]
        if attrs.get("map_public_ip_on_launch"):
            async with self._rollback_on_error("subnet", subnet["SubnetId"]):
                await self._call(
                    "create", "subnet", "modify_subnet_attribute",
                    SubnetId=subnet["SubnetId"], MapPublicIpOnLaunch={"Value": True},
                )
        return await self._remote("subnet", subnet)

    async def _create_internet_gateway(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "internet_gateway", "create_internet_gateway",
            TagSpecifications=self._tag_spec("internet_gateway", name, attrs.get("tags")),
        )
        gateway = resp["InternetGateway"]
        async with self._rollback_on_error("internet_gateway", gateway["InternetGatewayId"]):
            await self._call(
                "create", "internet_gateway", "attach_internet_gateway",
                InternetGatewayId=gateway["InternetGatewayId"], VpcId=attrs["network_id"],
            )
        return await self._remote("internet_gateway", gateway)

    async def _create_route_table(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "route_table", "create_route_table",
            VpcId=attrs["network_id"],
            TagSpecifications=self._tag_spec("route_table", name, attrs.get("tags")),
        )
        table = resp["RouteTable"]
        rtb_id = table["RouteTableId"]
        async with self._rollback_on_error("route_table", rtb_id):
            if attrs.get("gateway_id"):
                await self._call(
                    "create", "route_table", "create_route",
                    RouteTableId=rtb_id,
                    DestinationCidrBlock=attrs.get("destination_cidr") or "0.0.0.0/0",
                    GatewayId=attrs["gateway_id"],
                )
            for subnet_id in attrs.get("subnet_ids") or []:
                await self._call(
                    "create", "route_table", "associate_route_table",
                    RouteTableId=rtb_id, SubnetId=subnet_id,
                )
        return await self._remote("route_table", table)

    async def _create_security_group(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "security_group", "create_security_group",
            GroupName=attrs["group_name"],
            Description=attrs.get("description") or "Managed by strata",
            VpcId=attrs["network_id"],
            TagSpecifications=self._tag_spec("security_group", name, attrs.get("tags")),
        )
        permissions = [
            {
                "IpProtocol": str(rule.get("protocol", "tcp")),
                "FromPort": int(rule["from_port"]),
                "ToPort": int(rule.get("to_port", rule["from_port"])),
                "IpRanges": [{"CidrIp": c} for c in rule.get("cidr_blocks", ["0.0.0.0/0"])],
            }
            for rule in attrs.get("ingress") or []
        ]
        if permissions:
            async with self._rollback_on_error("security_group", resp["GroupId"]):
                await self._call(
                    "create", "security_group", "authorize_security_group_ingress",
                    GroupId=resp["GroupId"], IpPermissions=permissions,
                )
        return await self._remote("security_group", resp)

    async def _create_key_pair(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "key_pair", "import_key_pair",
            KeyName=attrs["key_name"],
            PublicKeyMaterial=str(attrs["public_key"]).encode(),
            TagSpecifications=self._tag_spec("key_pair", name, attrs.get("tags")),
        )
        return await self._remote("key_pair", resp)

    async def _create_instance(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        interface: dict[str, Any] = {
            "DeviceIndex": 0,
            "SubnetId": attrs["subnet_id"],
            "AssociatePublicIpAddress": bool(attrs.get("associate_public_ip", True)),
        }
        if attrs.get("security_group_ids"):
            interface["Groups"] = list(attrs["security_group_ids"])
        params: dict[str, Any] = {
            "ImageId": attrs["image_id"],
            "InstanceType": attrs["instance_type"],
            "MinCount": 1,
            "MaxCount": 1,
            "NetworkInterfaces": [interface],
            "TagSpecifications": self._tag_spec("instance", name, attrs.get("tags")),
        }
        if attrs.get("key_name"):
            params["KeyName"] = attrs["key_name"]
        if attrs.get("user_data"):
            params["UserData"] = attrs["user_data"]

        resp = await self._call("create", "instance", "run_instances", **params)
        instance = resp["Instances"][0]
        async with self._rollback_on_error("instance", instance["InstanceId"]):
            await self._wait("instance", "instance_running", InstanceIds=[instance["InstanceId"]])
            current = await self.read("instance", instance["InstanceId"])
        return current or await self._remote("instance", instance)

    async def _create_elastic_ip(self, name: str, attrs: dict[str, Any]) -> RemoteResource:
        resp = await self._call(
            "create", "elastic_ip", "allocate_address",
            Domain="vpc",
            TagSpecifications=self._tag_spec("elastic_ip", name, attrs.get("tags")),
        )
        if attrs.get("instance_id"):
            async with self._rollback_on_error("elastic_ip", resp["AllocationId"]):
                await self._call(
                    "create", "elastic_ip", "associate_address",
                    AllocationId=resp["AllocationId"], InstanceId=attrs["instance_id"],
                )
        return await self._remote("elastic_ip", resp)

    # =========================================================================
    # Read / find
    # =========================================================================

    def _items(self, kind: str, resp: dict[str, Any]) -> list[dict[str, Any]]:
        _, _, key, _ = DESCRIBERS[kind]
        if kind == "instance":
            items = [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]
            return [i for i in items if i.get("State", {}).get("Name") not in ("terminated", "shutting-down")]
        return list(resp.get(key, []))

    async def _remote(self, kind: str, item: dict[str, Any]) -> RemoteResource:
        """RemoteResource from a create or describe response item."""
        remote_id = item[ID_FIELDS[kind]]
        if kind == "network":
            # The default security group is not part of the VPC item
            return RemoteResource(remote_id, await self._network_outputs(remote_id))
        return RemoteResource(remote_id, _outputs(kind, item))

    async def read(self, kind: str, remote_id: str) -> RemoteResource | None:
        if kind not in DESCRIBERS:
            raise TerminalProviderError("read", kind, "unsupported resource kind")
        method, id_param, _, not_found = DESCRIBERS[kind]
        try:
            resp = await self._call("read", kind, method, **{id_param: [remote_id]})
        except TerminalProviderError as e:
            if e.code == not_found:
                return None
            raise
        items = self._items(kind, resp)
        if not items:
            return None
        return await self._remote(kind, items[0])

    async def find(self, kind: str, name: str) -> RemoteResource | None:
        if kind not in DESCRIBERS:
            raise TerminalProviderError("find", kind, "unsupported resource kind")
        method = DESCRIBERS[kind][0]
        resp = await self._call(
            "find", kind, method,
            Filters=[{"Name": f"tag:{ADDRESS_TAG}", "Values": [f"{kind}.{name}"]}],
        )
        items = self._items(kind, resp)
        if not items:
            return None
        return await self._remote(kind, items[0])

    # =========================================================================
    # Update
    # =========================================================================

    async def update(
        self,
        kind: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: set[str],
    ) -> RemoteResource:
        for attribute in sorted(changed):
            value = attributes.get(attribute)
            if attribute == "tags":
                await self._update_tags(kind, remote_id, value or {})
            elif kind == "network" and attribute == "enable_dns_hostnames":
                await self._call(
                    "update", kind, "modify_vpc_attribute",
                    VpcId=remote_id, EnableDnsHostnames={"Value": bool(value)},
                )
            elif kind == "subnet" and attribute == "map_public_ip_on_launch":
                await self._call(
                    "update", kind, "modify_subnet_attribute",
                    SubnetId=remote_id, MapPublicIpOnLaunch={"Value": bool(value)},
                )
            elif kind == "instance" and attribute == "security_group_ids":
                await self._call(
                    "update", kind, "modify_instance_attribute",
                    InstanceId=remote_id, Groups=list(value or []),
                )
            elif kind == "elastic_ip" and attribute == "instance_id":
                await self._disassociate(remote_id)
                if value:
                    await self._call(
                        "update", kind, "associate_address",
                        AllocationId=remote_id, InstanceId=value,
                    )
            else:
                raise TerminalProviderError("update", kind, f"attribute '{attribute}' cannot be updated in place")

        current = await self.read(kind, remote_id)
        if current is None:
            raise TerminalProviderError("update", kind, f"{remote_id} disappeared during update", code="NotFound")
        return current

    async def _update_tags(self, kind: str, remote_id: str, tags: dict[str, Any]) -> None:
        resp = await self._call(
            "update", kind, "describe_tags",
            Filters=[{"Name": "resource-id", "Values": [remote_id]}],
        )
        existing = {t["Key"] for t in resp.get("Tags", [])}
        protected = {"Name", ADDRESS_TAG}
        stale = sorted(existing - set(tags) - protected)
        if stale:
            await self._call(
                "update", kind, "delete_tags",
                Resources=[remote_id], Tags=[{"Key": k} for k in stale],
            )
        if tags:
            await self._call(
                "update", kind, "create_tags",
                Resources=[remote_id],
                Tags=[{"Key": str(k), "Value": str(v)} for k, v in sorted(tags.items())],
            )

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, kind: str, remote_id: str) -> None:
        deleter = self._deleters.get(kind)
        if deleter is None:
            raise TerminalProviderError("delete", kind, "unsupported resource kind")
        logger.info(f"aws: deleting {kind} {remote_id}")
        await deleter(remote_id)

    async def _delete_internet_gateway(self, igw_id: str) -> None:
        resp = await self._call(
            "delete", "internet_gateway", "describe_internet_gateways", InternetGatewayIds=[igw_id]
        )
        for gateway in resp.get("InternetGateways", []):
            for attachment in gateway.get("Attachments", []):
                await self._call(
                    "delete", "internet_gateway", "detach_internet_gateway",
                    InternetGatewayId=igw_id, VpcId=attachment["VpcId"],
                )
        await self._call("delete", "internet_gateway", "delete_internet_gateway", InternetGatewayId=igw_id)

    async def _delete_route_table(self, rtb_id: str) -> None:
        resp = await self._call("delete", "route_table", "describe_route_tables", RouteTableIds=[rtb_id])
        for table in resp.get("RouteTables", []):
            for assoc in table.get("Associations", []):
                if not assoc.get("Main"):
                    await self._call(
                        "delete", "route_table", "disassociate_route_table",
                        AssociationId=assoc["RouteTableAssociationId"],
                    )
        await self._call("delete", "route_table", "delete_route_table", RouteTableId=rtb_id)

    async def _delete_instance(self, instance_id: str) -> None:
        await self._call("delete", "instance", "terminate_instances", InstanceIds=[instance_id])
        await self._wait("instance", "instance_terminated", InstanceIds=[instance_id])

    async def _disassociate(self, allocation_id: str) -> None:
        resp = await self._call("update", "elastic_ip", "describe_addresses", AllocationIds=[allocation_id])
        for address in resp.get("Addresses", []):
            if address.get("AssociationId"):
                await self._call(
                    "update", "elastic_ip", "disassociate_address",
                    AssociationId=address["AssociationId"],
                )

    async def _delete_elastic_ip(self, allocation_id: str) -> None:
        await self._disassociate(allocation_id)
        await self._call("delete", "elastic_ip", "release_address", AllocationId=allocation_id)
