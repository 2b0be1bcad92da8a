"""
providers/compute.py

Instance and Address providers backed by a simulated cloud.

No network calls are made. SimulatedCloud keeps instances and addresses in
memory (optionally mirrored to a JSON file so separate CLI runs see the same
"cloud"), allocates ids and IPs, and enforces the few rules the real thing
would: an address can only be associated with an existing instance, and an
instance that goes away releases its association.

Resource kinds:
  Instance — a VM. Boot-time `user_data` runs once at creation, so changing it
             (like the image or key pair) forces a replacement.
  Address  — a persistent public address, optionally associated with an
             instance. Re-association happens in place.
"""

import ipaddress
import itertools
import json
import os
import tempfile
import threading
import uuid
from typing import Any, Dict, Optional, Tuple

from reconciler.errors import ProviderError

from .base import Provider, computed, immutable, make_schema, mutable

# Documentation ranges (RFC 5737) — never routable
_PRIVATE_NET   = ipaddress.ip_network("10.0.1.0/24")
_EPHEMERAL_NET = ipaddress.ip_network("203.0.113.0/24")
_ADDRESS_NET   = ipaddress.ip_network("198.51.100.0/24")


class SimulatedCloud:
    """
    In-memory stand-in for a cloud account. Thread-safe.
    Pass `path` to persist the inventory between processes.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self.instances: Dict[str, dict] = {}
        self.addresses: Dict[str, dict] = {}
        self._counter = itertools.count(1)
        if path and os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self.instances = dict(data["instances"])
                self.addresses = dict(data["addresses"])
                self._counter = itertools.count(int(data.get("next_host", 1)))
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as ex:
                raise ProviderError(f"Cannot read simulated cloud inventory {path}: {ex}") from ex

    def _save(self) -> None:
        if not self.path:
            return
        next_host = next(self._counter)
        self._counter = itertools.count(next_host)
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix=".cloud-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(
                    {"instances": self.instances, "addresses": self.addresses, "next_host": next_host},
                    f,
                    indent=4,
                )
            os.replace(tmp_path, self.path)
        except BaseException:
            os.remove(tmp_path)
            raise

    def _host(self, network) -> str:
        index = next(self._counter) % (network.num_addresses - 2) + 1
        return str(network.network_address + index)

    # ------------------------------------------------------------------
    # instances
    # ------------------------------------------------------------------

    def run_instance(self, ami: str, instance_type: str, key_name: Optional[str],
                     user_data: Optional[str], tags: Optional[dict]) -> dict:
        with self._lock:
            instance_id = f"i-{uuid.uuid4().hex[:17]}"
            instance = {
                "id": instance_id,
                "ami": ami,
                "instance_type": instance_type,
                "key_name": key_name,
                "user_data": user_data,
                "tags": dict(tags or {}),
                "state": "running",
                "private_ip": self._host(_PRIVATE_NET),
                "public_ip": self._host(_EPHEMERAL_NET),
            }
            self.instances[instance_id] = instance
            self._save()
            return dict(instance)

    def modify_instance(self, instance_id: str, **changes) -> dict:
        with self._lock:
            instance = self.instances.get(instance_id)
            if instance is None:
                raise RuntimeError(f"Instance '{instance_id}' does not exist.")
            instance.update(changes)
            self._save()
            return dict(instance)

    def terminate_instance(self, instance_id: str) -> bool:
        with self._lock:
            instance = self.instances.pop(instance_id, None)
            for address in self.addresses.values():
                if address.get("instance") == instance_id:
                    address["instance"] = None
            self._save()
            return instance is not None

    def get_instance(self, instance_id: str) -> Optional[dict]:
        instance = self.instances.get(instance_id)
        return dict(instance) if instance else None

    # ------------------------------------------------------------------
    # addresses
    # ------------------------------------------------------------------

    def allocate_address(self, tags: Optional[dict]) -> dict:
        with self._lock:
            allocation_id = f"eipalloc-{uuid.uuid4().hex[:17]}"
            address = {
                "id": allocation_id,
                "public_ip": self._host(_ADDRESS_NET),
                "instance": None,
                "tags": dict(tags or {}),
            }
            self.addresses[allocation_id] = address
            self._save()
            return dict(address)

    def associate_address(self, allocation_id: str, instance_id: Optional[str]) -> dict:
        with self._lock:
            address = self.addresses.get(allocation_id)
            if address is None:
                raise RuntimeError(f"Address '{allocation_id}' does not exist.")
            if instance_id is not None and instance_id not in self.instances:
                raise RuntimeError(f"Cannot associate {allocation_id}: instance '{instance_id}' does not exist.")
            address["instance"] = instance_id
            self._save()
            return dict(address)

    def tag_address(self, allocation_id: str, tags: Optional[dict]) -> dict:
        with self._lock:
            address = self.addresses.get(allocation_id)
            if address is None:
                raise RuntimeError(f"Address '{allocation_id}' does not exist.")
            address["tags"] = dict(tags or {})
            self._save()
            return dict(address)

    def release_address(self, allocation_id: str) -> bool:
        with self._lock:
            released = self.addresses.pop(allocation_id, None) is not None
            self._save()
            return released

    def get_address(self, allocation_id: str) -> Optional[dict]:
        address = self.addresses.get(allocation_id)
        return dict(address) if address else None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class InstanceProvider(Provider):
    """A virtual machine. Boots with an optional user-data script."""

    kind = "Instance"
    schema = make_schema(
        "Instance",
        ami=immutable(required=True),
        instance_type=mutable(required=True),
        key_name=immutable(),
        user_data=immutable(),
        tags=mutable(),
        id=computed(),
        private_ip=computed(),
        public_ip=computed(),
    )

    def __init__(self, cloud: SimulatedCloud):
        self.cloud = cloud

    def create(self, attributes: Dict[str, Any], log=print) -> Tuple[str, Dict[str, Any]]:
        instance = self.cloud.run_instance(
            ami=attributes["ami"],
            instance_type=attributes["instance_type"],
            key_name=attributes.get("key_name"),
            user_data=attributes.get("user_data"),
            tags=attributes.get("tags"),
        )
        log(f"  Instance {instance['id']} running ({instance['instance_type']}, {instance['ami']})")
        if instance["user_data"]:
            lines = len(str(instance["user_data"]).splitlines())
            log(f"  cloud-init: user data queued for first boot ({lines} line(s))")
        return instance["id"], _instance_outputs(instance)

    def update(self, provider_id: str, old: Dict[str, Any], new: Dict[str, Any], log=print) -> Dict[str, Any]:
        changes = {}
        if old.get("instance_type") != new.get("instance_type"):
            log(f"  Resizing {provider_id}: {old.get('instance_type')} → {new.get('instance_type')} (stop/modify/start)")
            changes["instance_type"] = new["instance_type"]
        if old.get("tags") != new.get("tags"):
            changes["tags"] = dict(new.get("tags") or {})
        instance = self.cloud.modify_instance(provider_id, **changes)
        return _instance_outputs(instance)

    def destroy(self, provider_id: str, log=print) -> None:
        if self.cloud.terminate_instance(provider_id):
            log(f"  Instance {provider_id} terminated")
        else:
            log(f"  Instance {provider_id} already gone")


def _instance_outputs(instance: dict) -> Dict[str, Any]:
    return {
        "id": instance["id"],
        "private_ip": instance["private_ip"],
        "public_ip": instance["public_ip"],
    }


class AddressProvider(Provider):
    """A persistent public address (elastic IP), optionally attached to an instance."""

    kind = "Address"
    schema = make_schema(
        "Address",
        instance=mutable(),
        tags=mutable(),
        id=computed(),
        public_ip=computed(),
    )

    def __init__(self, cloud: SimulatedCloud):
        self.cloud = cloud

    def create(self, attributes: Dict[str, Any], log=print) -> Tuple[str, Dict[str, Any]]:
        address = self.cloud.allocate_address(attributes.get("tags"))
        log(f"  Allocated address {address['public_ip']} ({address['id']})")
        instance_id = attributes.get("instance")
        if instance_id:
            try:
                self.cloud.associate_address(address["id"], instance_id)
            except RuntimeError:
                self.cloud.release_address(address["id"])
                raise
            log(f"  Associated {address['public_ip']} with {instance_id}")
        return address["id"], {"id": address["id"], "public_ip": address["public_ip"]}

    def update(self, provider_id: str, old: Dict[str, Any], new: Dict[str, Any], log=print) -> Dict[str, Any]:
        address = self.cloud.get_address(provider_id)
        if address is None:
            raise RuntimeError(f"Address '{provider_id}' does not exist.")
        if old.get("instance") != new.get("instance") or address["instance"] != new.get("instance"):
            address = self.cloud.associate_address(provider_id, new.get("instance"))
            target = new.get("instance") or "nothing"
            log(f"  Re-associated {address['public_ip']} with {target}")
        if old.get("tags") != new.get("tags"):
            address = self.cloud.tag_address(provider_id, new.get("tags"))
        return {"id": address["id"], "public_ip": address["public_ip"]}

    def destroy(self, provider_id: str, log=print) -> None:
        if self.cloud.release_address(provider_id):
            log(f"  Address {provider_id} released")
        else:
            log(f"  Address {provider_id} already released")
