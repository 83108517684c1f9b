"""Narrow a resolved catalog to the kernels one request should exercise."""

from __future__ import annotations

import re

from kmatrix.catalog.models import KernelCatalog, KernelDescriptor
from kmatrix.errors import SelectionError


def select_kernels(
    catalog: KernelCatalog,
    pattern: str | None,
    guess_all: bool = False,
    max_kernels: int | None = None,
) -> list[KernelDescriptor]:
    """
    Select usable kernels in catalog order.

    With ``guess_all`` or an empty pattern every usable kernel is taken;
    otherwise the pattern is searched in "<distro> <version> <release>".
    ``max_kernels=None`` means no limit.
    """
    candidates = catalog.usable()

    if not guess_all and pattern:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise SelectionError(f"Invalid kernel pattern {pattern!r}: {exc}") from exc
        candidates = [d for d in candidates if regex.search(d.description)]

    if max_kernels is not None:
        candidates = candidates[: max(max_kernels, 0)]

    if not candidates:
        if guess_all or not pattern:
            raise SelectionError("No usable kernels in catalog")
        raise SelectionError(f"No usable kernels match {pattern!r}")

    return candidates
