"""
providers/keypair.py

KeyPair provider — registers an OpenSSH public key under a name so instances
can reference it via `key_name`.

Only the public half is ever handled. The key is parsed with paramiko, which
both validates it and yields the SHA256 fingerprint reported back as a
computed attribute.
"""

import base64
import binascii
import threading
import uuid
from typing import Any, Dict, Tuple

import paramiko
from paramiko.pkey import UnknownKeyType

from .base import Provider, computed, immutable, make_schema


def parse_public_key(text: str) -> paramiko.PKey:
    """
    Parse an OpenSSH public key line ("ssh-rsa AAAA... comment").
    Raises ValueError if it is not a supported public key.
    """
    parts = (text or "").strip().split()
    if len(parts) < 2:
        raise ValueError("public_key must look like '<type> <base64> [comment]'")
    key_type, blob = parts[0], parts[1]
    try:
        key_bytes = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise ValueError(f"public_key is not valid base64: {ex}") from ex
    try:
        return paramiko.PKey.from_type_string(key_type, key_bytes)
    except (paramiko.SSHException, UnknownKeyType, ValueError, TypeError, IndexError) as ex:
        raise ValueError(f"Unsupported or malformed {key_type} public key: {ex}") from ex


def fingerprint(text: str) -> str:
    """SHA256 fingerprint in OpenSSH format, e.g. 'SHA256:47DEQpj8...'."""
    return parse_public_key(text).fingerprint


class KeyPairProvider(Provider):
    """Named SSH public keys, held in memory."""

    kind = "KeyPair"
    schema = make_schema(
        "KeyPair",
        key_name=immutable(required=True),
        public_key=immutable(required=True),
        id=computed(),
        fingerprint=computed(),
    )

    def __init__(self):
        self._lock = threading.Lock()
        self.keys: Dict[str, dict] = {}

    def create(self, attributes: Dict[str, Any], log=print) -> Tuple[str, Dict[str, Any]]:
        key_name = attributes["key_name"]
        try:
            fp = fingerprint(attributes["public_key"])
        except ValueError as ex:
            raise RuntimeError(f"KeyPair '{key_name}': {ex}") from ex

        with self._lock:
            if any(k["key_name"] == key_name for k in self.keys.values()):
                raise RuntimeError(f"A key pair named '{key_name}' already exists.")
            key_id = f"key-{uuid.uuid4().hex[:17]}"
            self.keys[key_id] = {"key_name": key_name, "fingerprint": fp}

        log(f"  Imported key pair '{key_name}' ({fp})")
        return key_id, {"id": key_id, "fingerprint": fp}

    def update(self, provider_id: str, old: Dict[str, Any], new: Dict[str, Any], log=print) -> Dict[str, Any]:
        # Every user-settable attribute is immutable; the planner never asks.
        raise RuntimeError("KeyPair cannot be updated in place.")

    def destroy(self, provider_id: str, log=print) -> None:
        with self._lock:
            removed = self.keys.pop(provider_id, None)
        if removed:
            log(f"  Deleted key pair '{removed['key_name']}'")
