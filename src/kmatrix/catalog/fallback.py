"""
Rootfs fallback resolution.

Entries whose rootfs image is missing borrow the image of the closest lower
version of the same distro. Entries with nothing to borrow are marked
unusable by clearing their rootfs.
"""

from __future__ import annotations

import dataclasses
from collections import defaultdict
from collections.abc import Callable
from pathlib import Path

import structlog

from kmatrix.catalog.models import KernelCatalog, KernelDescriptor, version_key

logger = structlog.get_logger()


def _present(path: Path | None) -> bool:
    return path is not None and str(path) != "" and path.exists()


def build_rootfs_index(
    catalog: KernelCatalog,
    exists: Callable[[Path | None], bool] = _present,
) -> dict[str, list[KernelDescriptor]]:
    """
    Per-distro list of entries with a present rootfs, highest version first.

    The sort is stable, so entries sharing a version keep catalog order.
    """
    index: dict[str, list[KernelDescriptor]] = defaultdict(list)
    for descriptor in catalog:
        if exists(descriptor.rootfs_path):
            index[descriptor.distro].append(descriptor)

    for entries in index.values():
        entries.sort(key=lambda d: version_key(d.version), reverse=True)
    return dict(index)


def find_fallback(
    index: dict[str, list[KernelDescriptor]],
    descriptor: KernelDescriptor,
) -> Path | None:
    """Rootfs of the closest strictly-lower version of the same distro."""
    own = version_key(descriptor.version)
    for candidate in index.get(descriptor.distro, []):
        if version_key(candidate.version) < own:
            return candidate.rootfs_path
    return None


def resolve_fallbacks(
    catalog: KernelCatalog,
    exists: Callable[[Path | None], bool] = _present,
) -> KernelCatalog:
    """Return a catalog where each rootfs is either present or cleared."""
    index = build_rootfs_index(catalog, exists)
    resolved = KernelCatalog()

    for descriptor in catalog:
        if exists(descriptor.rootfs_path):
            resolved.add(descriptor)
            continue

        fallback = find_fallback(index, descriptor)
        if fallback is not None:
            logger.info(
                "Rootfs missing, using fallback",
                kernel=descriptor.description,
                rootfs=str(descriptor.rootfs_path),
                fallback=str(fallback),
            )
        else:
            logger.warning(
                "Rootfs missing, no fallback found",
                kernel=descriptor.description,
                rootfs=str(descriptor.rootfs_path),
            )
        resolved.add(dataclasses.replace(descriptor, rootfs_path=fallback))

    return resolved
