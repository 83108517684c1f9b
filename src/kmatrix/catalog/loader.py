"""
Kernel catalog loading.

A catalog source is a YAML document with a top-level ``kernels`` list:

    kernels:
      - distro: ubuntu
        version: "18.04"
        release: 4.15.0-20-generic
        kernel_path: ~/.kmatrix/kernels/vmlinuz-4.15.0-20-generic
        rootfs_path: ~/.kmatrix/images/ubuntu18.04.img

Sources merge in the order given; later sources only add identities that
are not present yet.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from kmatrix.catalog.models import KernelCatalog, KernelDescriptor
from kmatrix.errors import ConfigError

logger = structlog.get_logger()


def _read_source(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise ConfigError(f"Kernel catalog not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read kernel catalog {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Kernel catalog {path} must be a mapping")

    entries = data.get("kernels") or []
    if not isinstance(entries, list):
        raise ConfigError(f"'kernels' in {path} must be a list")
    return entries


def load_catalog(*sources: Path) -> KernelCatalog:
    """Merge kernel catalogs, first-seen identity wins."""
    catalog = KernelCatalog()

    for source in sources:
        source = Path(source).expanduser()
        entries = _read_source(source)
        added = 0

        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigError(f"{source}: kernel entry #{index} is not a mapping")
            try:
                descriptor = KernelDescriptor.from_dict(entry, base_dir=source.parent)
            except (KeyError, ValueError) as exc:
                raise ConfigError(f"{source}: kernel entry #{index} is invalid: {exc}") from exc

            if catalog.add(descriptor):
                added += 1
            else:
                logger.debug(
                    "Duplicate kernel ignored",
                    source=str(source),
                    kernel=descriptor.description,
                )

        logger.debug("Kernel catalog loaded", source=str(source), entries=len(entries), added=added)

    return catalog
