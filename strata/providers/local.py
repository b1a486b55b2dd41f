"""
Local provider - a simulated cloud account.

Keeps resources in memory, optionally persisted to a JSON file so
plan/apply/destroy can be exercised end to end without credentials.
Enforces the same constraints a real account would (parents must exist,
unique CIDRs, no deletion while referenced) and supports fault
injection for tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from strata.core.exceptions import TerminalProviderError, TransientProviderError
from strata.providers.base import Provider, RemoteResource

ID_PREFIXES = {
    "network": "vpc",
    "subnet": "subnet",
    "internet_gateway": "igw",
    "route_table": "rtb",
    "security_group": "sg",
    "key_pair": "key",
    "instance": "i",
    "elastic_ip": "eipalloc",
}

# Attributes holding ids of other resources: kind -> {attribute: referenced kind}
PARENT_REFS: dict[str, dict[str, str]] = {
    "subnet": {"network_id": "network"},
    "internet_gateway": {"network_id": "network"},
    "route_table": {
        "network_id": "network",
        "gateway_id": "internet_gateway",
        "subnet_ids": "subnet",
    },
    "security_group": {"network_id": "network"},
    "instance": {"subnet_id": "subnet", "security_group_ids": "security_group"},
    "elastic_ip": {"instance_id": "instance"},
}

# kind -> (unique attribute, scope attributes)
UNIQUE_KEYS: dict[str, tuple[str, tuple[str, ...]]] = {
    "network": ("cidr_block", ()),
    "subnet": ("cidr_block", ("network_id",)),
    "internet_gateway": ("network_id", ()),
    "security_group": ("group_name", ("network_id",)),
    "key_pair": ("key_name", ()),
}


@dataclass
class Fault:
    """An injected failure."""

    target: str  # kind or address
    operation: str
    transient: bool
    times: int
    code: str


class LocalProvider(Provider):
    """Simulated provider backed by a dict (and optionally a JSON file)."""

    name = "local"

    def __init__(self, path: Path | str | None = None, region: str = "local-1", delay: float = 0.0):
        """
        Args:
            path: JSON file to persist resources to (None keeps them in memory)
            region: Region reported in computed outputs
            delay: Simulated latency per call in seconds
        """
        self.path = Path(path) if path is not None else None
        self.region = region
        self.delay = delay
        self.resources: dict[str, dict[str, Any]] = {}
        self.counter = 0
        self.calls: list[tuple[str, str]] = []
        self.faults: list[Fault] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = asyncio.Lock()
        self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise TerminalProviderError("load", "local", f"backing file {self.path} is not JSON: {e}") from e
        self.resources = data.get("resources", {})
        self.counter = int(data.get("counter", 0))

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"counter": self.counter, "resources": self.resources}
        self.path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    # =========================================================================
    # Test hooks
    # =========================================================================

    def inject_fault(
        self,
        target: str,
        operation: str = "create",
        transient: bool = False,
        times: int = 1,
        code: str | None = None,
    ) -> None:
        """
        Make the next ``times`` matching calls fail.

        Args:
            target: Resource kind or address (kind.name)
            operation: create, read, update, delete or find
            transient: Raise TransientProviderError instead of terminal
            times: Number of calls to fail
            code: Error code (default: Throttling / InvalidParameterValue)
        """
        self.faults.append(
            Fault(
                target=target,
                operation=operation,
                transient=transient,
                times=times,
                code=code or ("Throttling" if transient else "InvalidParameterValue"),
            )
        )

    def remove_out_of_band(self, remote_id: str) -> None:
        """Delete a resource behind the engine's back (drift)."""
        self.resources.pop(remote_id, None)
        self._save()

    def find_id(self, address: str) -> str | None:
        for remote_id, res in self.resources.items():
            if f"{res['kind']}.{res['name']}" == address:
                return remote_id
        return None

    def calls_for(self, operation: str) -> list[str]:
        return [address for op, address in self.calls if op == operation]

    # =========================================================================
    # Internals
    # =========================================================================

    def _maybe_fail(self, operation: str, kind: str, address: str) -> None:
        for fault in self.faults:
            if fault.times <= 0 or fault.operation != operation:
                continue
            if fault.target not in (kind, address):
                continue
            fault.times -= 1
            error_cls = TransientProviderError if fault.transient else TerminalProviderError
            raise error_cls(operation, kind, f"injected fault for {address}", code=fault.code)

    async def _enter(self, operation: str, kind: str, address: str) -> None:
        self.calls.append((operation, address))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self._maybe_fail(operation, kind, address)
        except BaseException:
            self.in_flight -= 1
            raise

    def _exit(self) -> None:
        self.in_flight -= 1

    def _address_of(self, remote_id: str, kind: str) -> str:
        res = self.resources.get(remote_id)
        return f"{res['kind']}.{res['name']}" if res else f"{kind}.?"

    def _check_parents(self, kind: str, attributes: dict[str, Any]) -> None:
        for attr, parent_kind in PARENT_REFS.get(kind, {}).items():
            value = attributes.get(attr)
            if value is None:
                continue
            for ref in value if isinstance(value, list) else [value]:
                parent = self.resources.get(ref)
                if parent is None or parent["kind"] != parent_kind:
                    raise TerminalProviderError(
                        "create", kind, f"{attr} {ref!r} does not exist", code="InvalidParameterValue"
                    )

    def _check_unique(self, kind: str, attributes: dict[str, Any], exclude: str | None = None) -> None:
        key = UNIQUE_KEYS.get(kind)
        if key is None:
            return
        attr, scope = key
        wanted = (attributes.get(attr), tuple(attributes.get(s) for s in scope))
        for remote_id, res in self.resources.items():
            if remote_id == exclude or res["kind"] != kind:
                continue
            other = res["attributes"]
            if (other.get(attr), tuple(other.get(s) for s in scope)) == wanted:
                raise TerminalProviderError(
                    "create", kind, f"{attr} {wanted[0]!r} conflicts with {remote_id}", code="Conflict"
                )

    def _referencing(self, remote_id: str) -> list[str]:
        users = []
        for other_id, res in self.resources.items():
            for attr in PARENT_REFS.get(res["kind"], {}):
                value = res["attributes"].get(attr)
                if value == remote_id or (isinstance(value, list) and remote_id in value):
                    users.append(other_id)
        return sorted(users)

    def _computed(self, kind: str, attributes: dict[str, Any], n: int) -> dict[str, Any]:
        if kind == "network":
            return {"default_security_group_id": f"sg-default{n:08x}"}
        if kind == "subnet":
            return {"availability_zone": attributes.get("availability_zone") or f"{self.region}a"}
        if kind == "key_pair":
            digest = hashlib.md5(str(attributes.get("public_key", "")).encode()).hexdigest()  # noqa: S324
            return {"fingerprint": ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))}
        if kind == "instance":
            public_ip = f"203.0.113.{n % 254 + 1}" if attributes.get("associate_public_ip", True) else None
            return {"private_ip": f"10.0.{n // 256 % 256}.{n % 256}", "public_ip": public_ip}
        if kind == "elastic_ip":
            return {"public_ip": f"198.51.100.{n % 254 + 1}"}
        return {}

    # =========================================================================
    # Provider API
    # =========================================================================

    def supports(self, kind: str) -> bool:
        return kind in ID_PREFIXES

    async def create(self, kind: str, name: str, attributes: dict[str, Any]) -> RemoteResource:
        address = f"{kind}.{name}"
        await self._enter("create", kind, address)
        try:
            if not self.supports(kind):
                raise TerminalProviderError("create", kind, "unsupported resource kind")
            async with self._lock:
                self._check_parents(kind, attributes)
                self._check_unique(kind, attributes)
                self.counter += 1
                remote_id = f"{ID_PREFIXES[kind]}-{self.counter:08x}"
                outputs = self._computed(kind, attributes, self.counter)
                self.resources[remote_id] = {
                    "kind": kind,
                    "name": name,
                    "attributes": dict(attributes),
                    "outputs": outputs,
                }
                self._save()
            logger.debug(f"local: created {address} as {remote_id}")
            return RemoteResource(remote_id=remote_id, outputs=dict(outputs))
        finally:
            self._exit()

    async def read(self, kind: str, remote_id: str) -> RemoteResource | None:
        await self._enter("read", kind, self._address_of(remote_id, kind))
        try:
            res = self.resources.get(remote_id)
            if res is None or res["kind"] != kind:
                return None
            return RemoteResource(remote_id=remote_id, outputs=dict(res["outputs"]))
        finally:
            self._exit()

    async def update(
        self,
        kind: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: set[str],
    ) -> RemoteResource:
        await self._enter("update", kind, self._address_of(remote_id, kind))
        try:
            async with self._lock:
                res = self.resources.get(remote_id)
                if res is None:
                    raise TerminalProviderError("update", kind, f"{remote_id} does not exist", code="NotFound")
                self._check_parents(kind, attributes)
                res["attributes"].update({k: attributes.get(k) for k in changed})
                self._save()
            return RemoteResource(remote_id=remote_id, outputs=dict(res["outputs"]))
        finally:
            self._exit()

    async def delete(self, kind: str, remote_id: str) -> None:
        await self._enter("delete", kind, self._address_of(remote_id, kind))
        try:
            async with self._lock:
                if remote_id not in self.resources:
                    raise TerminalProviderError("delete", kind, f"{remote_id} does not exist", code="NotFound")
                users = self._referencing(remote_id)
                if users:
                    raise TerminalProviderError(
                        "delete", kind, f"{remote_id} is still used by {', '.join(users)}",
                        code="DependencyViolation",
                    )
                del self.resources[remote_id]
                self._save()
            logger.debug(f"local: deleted {remote_id}")
        finally:
            self._exit()

    async def find(self, kind: str, name: str) -> RemoteResource | None:
        address = f"{kind}.{name}"
        await self._enter("find", kind, address)
        try:
            remote_id = self.find_id(address)
            if remote_id is None:
                return None
            return RemoteResource(remote_id=remote_id, outputs=dict(self.resources[remote_id]["outputs"]))
        finally:
            self._exit()
