"""Package registry and manifest adapters."""

from depguardian.adapters.base import PackageNotFoundError, RegistryClient
from depguardian.adapters.manifest import ManifestError, load_dependencies
from depguardian.adapters.npm import NpmAdapter

__all__ = [
    "ManifestError",
    "NpmAdapter",
    "PackageNotFoundError",
    "RegistryClient",
    "load_dependencies",
]
