"""
Kernel catalog - loading, fallback resolution and selection.

Modules:
    models      - KernelDescriptor and KernelCatalog
    loader      - Merge YAML catalog sources
    fallback    - Substitute missing rootfs images
    selector    - Pick the kernels a request exercises
"""

from kmatrix.catalog.fallback import resolve_fallbacks
from kmatrix.catalog.loader import load_catalog
from kmatrix.catalog.models import KernelCatalog, KernelDescriptor, version_key
from kmatrix.catalog.selector import select_kernels

__all__ = [
    "KernelCatalog",
    "KernelDescriptor",
    "load_catalog",
    "resolve_fallbacks",
    "select_kernels",
    "version_key",
]
