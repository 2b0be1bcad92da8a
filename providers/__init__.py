"""
providers/__init__.py

Public API for the providers package.

Usage:
    from providers import default_providers, schemas_for
    providers = default_providers()            # {"Instance": InstanceProvider(...), ...}
    schemas   = schemas_for(providers)         # {"Instance": ResourceSchema(...), ...}

    from providers import get_provider
    provider = get_provider("Instance")        # one provider on its own
"""

import os
from typing import Dict, List, Mapping, Optional, Type

from reconciler.model import ResourceSchema

from .base import Provider
from .compute import AddressProvider, InstanceProvider, SimulatedCloud
from .keypair import KeyPairProvider
from .local_exec import LocalExecProvider

# Registry — add new resource kinds here, nothing else needs to change
_PROVIDERS: Dict[str, Type[Provider]] = {
    "KeyPair":   KeyPairProvider,
    "Instance":  InstanceProvider,
    "Address":   AddressProvider,
    "LocalExec": LocalExecProvider,
}

# Providers that share the simulated cloud inventory
_CLOUD_BACKED = {InstanceProvider, AddressProvider}

# Unset → the simulated cloud lives in memory for the life of the process
CLOUD_FILE: Optional[str] = os.getenv("RECONCILER_CLOUD_FILE")


def registered_kinds() -> List[str]:
    return sorted(_PROVIDERS)


def get_provider(kind: str, cloud: Optional[SimulatedCloud] = None) -> Provider:
    """
    Factory function. Returns an instantiated provider by resource kind.

    Args:
        kind:  "KeyPair" | "Instance" | "Address" | "LocalExec" (case-insensitive)
        cloud: SimulatedCloud shared by Instance/Address; a fresh one if omitted.

    Raises:
        ValueError: if the kind is not registered.
    """
    key = kind.strip().lower()
    provider_class = next((cls for name, cls in _PROVIDERS.items() if name.lower() == key), None)
    if not provider_class:
        supported = ", ".join(registered_kinds())
        raise ValueError(
            f"Unknown resource kind '{kind}'. Supported kinds: {supported}"
        )
    if provider_class in _CLOUD_BACKED:
        return provider_class(cloud or SimulatedCloud(CLOUD_FILE))
    return provider_class()


def default_providers(cloud: Optional[SimulatedCloud] = None) -> Dict[str, Provider]:
    """One provider per registered kind, all sharing a single simulated cloud."""
    cloud = cloud or SimulatedCloud(CLOUD_FILE)
    return {kind: get_provider(kind, cloud=cloud) for kind in registered_kinds()}


def schemas_for(providers: Mapping[str, Provider]) -> Dict[str, ResourceSchema]:
    return {kind: provider.schema for kind, provider in providers.items()}


__all__ = [
    "AddressProvider",
    "InstanceProvider",
    "KeyPairProvider",
    "LocalExecProvider",
    "Provider",
    "SimulatedCloud",
    "default_providers",
    "get_provider",
    "registered_kinds",
    "schemas_for",
]
