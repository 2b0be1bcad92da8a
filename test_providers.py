"""
test_providers.py

Lab providers against the simulated cloud, plus the provider registry.
"""

import os

import paramiko
import pytest

from providers import (
    AddressProvider,
    InstanceProvider,
    KeyPairProvider,
    LocalExecProvider,
    SimulatedCloud,
    default_providers,
    get_provider,
    registered_kinds,
)
from providers.keypair import fingerprint
from reconciler import ProviderError


def quiet(_line):
    pass


def _public_key():
    key = paramiko.RSAKey.generate(2048)
    return f"{key.get_name()} {key.get_base64()} lab@test", key


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registered_kinds():
    assert registered_kinds() == ["Address", "Instance", "KeyPair", "LocalExec"]


def test_get_provider_is_case_insensitive():
    assert isinstance(get_provider("instance"), InstanceProvider)
    assert isinstance(get_provider(" LocalExec "), LocalExecProvider)


def test_get_provider_unknown_kind():
    with pytest.raises(ValueError, match="Unknown resource kind"):
        get_provider("Bucket")


def test_default_providers_share_one_cloud():
    providers = default_providers()
    assert providers["Instance"].cloud is providers["Address"].cloud


# ---------------------------------------------------------------------------
# KeyPair
# ---------------------------------------------------------------------------

def test_keypair_fingerprint():
    text, key = _public_key()
    provider = KeyPairProvider()
    key_id, computed = provider.create({"key_name": "lab", "public_key": text}, log=quiet)

    assert key_id.startswith("key-")
    assert computed["fingerprint"] == key.fingerprint
    assert computed["fingerprint"].startswith("SHA256:")


def test_keypair_rejects_garbage():
    with pytest.raises(ValueError):
        fingerprint("ssh-rsa not-base64!")
    with pytest.raises(RuntimeError):
        KeyPairProvider().create({"key_name": "lab", "public_key": "nope"}, log=quiet)


def test_keypair_duplicate_name():
    text, _ = _public_key()
    provider = KeyPairProvider()
    provider.create({"key_name": "lab", "public_key": text}, log=quiet)
    with pytest.raises(RuntimeError, match="already exists"):
        provider.create({"key_name": "lab", "public_key": text}, log=quiet)


def test_keypair_destroy_is_idempotent():
    text, _ = _public_key()
    provider = KeyPairProvider()
    key_id, _ = provider.create({"key_name": "lab", "public_key": text}, log=quiet)
    provider.destroy(key_id, log=quiet)
    provider.destroy(key_id, log=quiet)
    assert provider.keys == {}


# ---------------------------------------------------------------------------
# Instance + Address
# ---------------------------------------------------------------------------

def test_instance_lifecycle():
    cloud = SimulatedCloud()
    provider = InstanceProvider(cloud)
    instance_id, computed = provider.create({"ami": "ami-0abc", "instance_type": "t2.micro"}, log=quiet)

    assert instance_id.startswith("i-")
    assert computed["private_ip"].startswith("10.0.1.")
    assert computed["public_ip"].startswith("203.0.113.")

    old = {"ami": "ami-0abc", "instance_type": "t2.micro"}
    new = {"ami": "ami-0abc", "instance_type": "t3.small", "tags": {"env": "lab"}}
    provider.update(instance_id, old, new, log=quiet)
    assert cloud.get_instance(instance_id)["instance_type"] == "t3.small"
    assert cloud.get_instance(instance_id)["tags"] == {"env": "lab"}

    provider.destroy(instance_id, log=quiet)
    assert cloud.get_instance(instance_id) is None
    provider.destroy(instance_id, log=quiet)


def test_address_association():
    cloud = SimulatedCloud()
    instance_id, _ = InstanceProvider(cloud).create({"ami": "a", "instance_type": "t"}, log=quiet)
    provider = AddressProvider(cloud)

    address_id, computed = provider.create({"instance": instance_id}, log=quiet)
    assert computed["public_ip"].startswith("198.51.100.")
    assert cloud.get_address(address_id)["instance"] == instance_id

    provider.update(address_id, {"instance": instance_id}, {"instance": None}, log=quiet)
    assert cloud.get_address(address_id)["instance"] is None


def test_address_for_unknown_instance_is_released():
    cloud = SimulatedCloud()
    with pytest.raises(RuntimeError):
        AddressProvider(cloud).create({"instance": "i-missing"}, log=quiet)
    assert cloud.addresses == {}


def test_terminating_instance_disassociates_address():
    cloud = SimulatedCloud()
    instance_id, _ = InstanceProvider(cloud).create({"ami": "a", "instance_type": "t"}, log=quiet)
    address_id, _ = AddressProvider(cloud).create({"instance": instance_id}, log=quiet)

    InstanceProvider(cloud).destroy(instance_id, log=quiet)
    assert cloud.get_address(address_id)["instance"] is None


def test_cloud_persists_to_file(tmp_path):
    path = str(tmp_path / "cloud.json")
    instance_id, _ = InstanceProvider(SimulatedCloud(path)).create({"ami": "a", "instance_type": "t"}, log=quiet)
    assert SimulatedCloud(path).get_instance(instance_id)["ami"] == "a"
    assert os.listdir(str(tmp_path)) == ["cloud.json"]


@pytest.mark.parametrize("content", ["{truncated", "[]", '{"instances": {}}'])
def test_unreadable_cloud_file_raises_provider_error(tmp_path, content):
    path = tmp_path / "cloud.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ProviderError, match="Cannot read simulated cloud inventory"):
        SimulatedCloud(str(path))


# ---------------------------------------------------------------------------
# LocalExec
# ---------------------------------------------------------------------------

def test_local_exec_runs_command():
    lines = []
    run_id, computed = LocalExecProvider().create(
        {"command": "echo hello $WHO", "environment": {"WHO": "lab"}},
        log=lines.append,
    )
    assert run_id.startswith("exec-")
    assert computed["exit_code"] == 0
    assert any("hello lab" in line for line in lines)


def test_local_exec_failure():
    with pytest.raises(RuntimeError, match="status 3"):
        LocalExecProvider().create({"command": "exit 3"}, log=quiet)


def test_local_exec_timeout():
    with pytest.raises(RuntimeError, match="timed out"):
        LocalExecProvider(timeout=1).create({"command": "sleep 3"}, log=quiet)
