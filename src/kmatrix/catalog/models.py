"""Kernel descriptors and the ordered catalog they live in."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

KernelKey = tuple[str, str, str]

_VERSION_SPLIT = re.compile(r"[.\-_+~]")


def version_key(version: str) -> tuple[tuple[int, int | str], ...]:
    """
    Sort key for distro versions.

    Numeric components compare as integers ("18.04" > "9.10"); anything else
    compares as text and sorts after numbers at the same position.
    """
    parts: list[tuple[int, int | str]] = []
    for part in _VERSION_SPLIT.split(version.strip()):
        if not part:
            continue
        if part.isdigit():
            parts.append((0, int(part)))
        else:
            parts.append((1, part))
    return tuple(parts)


@dataclass(frozen=True)
class KernelDescriptor:
    """One bootable kernel target: identity plus its kernel/rootfs image pair."""

    distro: str
    version: str
    release: str
    kernel_path: Path
    rootfs_path: Path | None
    initrd_path: Path | None = None
    container_image: str | None = None

    @property
    def key(self) -> KernelKey:
        return (self.distro, self.version, self.release)

    @property
    def usable(self) -> bool:
        """False once fallback resolution found no rootfs for this entry."""
        return self.rootfs_path is not None and str(self.rootfs_path) != ""

    @property
    def description(self) -> str:
        return f"{self.distro} {self.version} {self.release}"

    @property
    def slug(self) -> str:
        raw = f"{self.distro}-{self.version}-{self.release}"
        return re.sub(r"[^a-zA-Z0-9_.-]+", "-", raw)

    def image_name(self, prefix: str) -> str:
        """Docker image holding the headers for this kernel."""
        if self.container_image:
            return self.container_image
        version = re.sub(r"[^a-z0-9_.-]+", "_", self.version.lower())
        return f"{prefix}_{self.distro.lower()}_{version}"

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> KernelDescriptor:
        def _path(value: Any) -> Path | None:
            if value is None or str(value) == "":
                return None
            path = Path(str(value)).expanduser()
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            return path

        kernel_path = _path(data["kernel_path"])
        if kernel_path is None:
            raise ValueError("kernel_path must not be empty")

        return cls(
            distro=str(data["distro"]),
            version=str(data["version"]),
            release=str(data["release"]),
            kernel_path=kernel_path,
            rootfs_path=_path(data.get("rootfs_path")),
            initrd_path=_path(data.get("initrd_path")),
            container_image=data.get("container_image") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "distro": self.distro,
            "version": self.version,
            "release": self.release,
            "kernel_path": str(self.kernel_path),
            "rootfs_path": str(self.rootfs_path) if self.rootfs_path else "",
            "initrd_path": str(self.initrd_path) if self.initrd_path else None,
            "container_image": self.container_image,
        }


class KernelCatalog:
    """
    Ordered collection of kernel descriptors.

    Insertion order is preserved and identity keys are unique: adding a
    descriptor whose key is already present is a no-op (first-seen wins).
    """

    def __init__(self, descriptors: Iterable[KernelDescriptor] = ()) -> None:
        self._entries: list[KernelDescriptor] = []
        self._keys: set[KernelKey] = set()
        for descriptor in descriptors:
            self.add(descriptor)

    def add(self, descriptor: KernelDescriptor) -> bool:
        """Append a descriptor unless its identity is already present."""
        if descriptor.key in self._keys:
            return False
        self._keys.add(descriptor.key)
        self._entries.append(descriptor)
        return True

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __iter__(self) -> Iterator[KernelDescriptor]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> KernelDescriptor:
        return self._entries[index]

    def get(self, key: KernelKey) -> KernelDescriptor | None:
        for descriptor in self._entries:
            if descriptor.key == key:
                return descriptor
        return None

    def usable(self) -> list[KernelDescriptor]:
        return [d for d in self._entries if d.usable]
