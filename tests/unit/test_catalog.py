"""
Unit tests for the kernel catalog.

Tests:
- Version ordering
- Catalog loading and first-seen merge
- Rootfs fallback resolution
- Kernel selection
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from conftest import make_descriptor
from kmatrix.catalog import (
    KernelCatalog,
    load_catalog,
    resolve_fallbacks,
    select_kernels,
    version_key,
)
from kmatrix.errors import ConfigError, SelectionError


def _write_catalog(path: Path, kernels: list[dict]) -> Path:
    path.write_text(yaml.safe_dump({"kernels": kernels}))
    return path


def _entry(distro: str, version: str, release: str, rootfs: str = "") -> dict:
    return {
        "distro": distro,
        "version": version,
        "release": release,
        "kernel_path": f"/boot/vmlinuz-{release}",
        "rootfs_path": rootfs,
    }


# =============================================================================
# Version ordering
# =============================================================================


class TestVersionKey:
    def test_numeric_components(self):
        assert version_key("18.04") > version_key("9.10")
        assert version_key("16.04") < version_key("18.04")

    def test_longer_version_is_higher(self):
        assert version_key("7.1") > version_key("7")

    def test_equal_versions(self):
        assert version_key("8") == version_key("8")


# =============================================================================
# Loading
# =============================================================================


class TestLoadCatalog:
    def test_preserves_order(self, tmp_path):
        path = _write_catalog(
            tmp_path / "kernels.yaml",
            [_entry("ubuntu", "18.04", "4.15.0-20"), _entry("debian", "9", "4.9.0-8")],
        )
        catalog = load_catalog(path)
        assert [d.distro for d in catalog] == ["ubuntu", "debian"]

    def test_first_seen_wins(self, tmp_path):
        main = _write_catalog(
            tmp_path / "main.yaml", [_entry("ubuntu", "18.04", "4.15.0-20", "/main.img")]
        )
        user = _write_catalog(
            tmp_path / "user.yaml",
            [
                _entry("ubuntu", "18.04", "4.15.0-20", "/user.img"),
                _entry("ubuntu", "16.04", "4.4.0-21", "/user16.img"),
            ],
        )

        catalog = load_catalog(main, user)

        assert len(catalog) == 2
        assert catalog[0].rootfs_path == Path("/main.img")
        assert catalog[1].version == "16.04"

    def test_relative_paths_resolve_against_catalog_dir(self, tmp_path):
        path = _write_catalog(
            tmp_path / "kernels.yaml",
            [
                {
                    "distro": "ubuntu",
                    "version": "18.04",
                    "release": "r",
                    "kernel_path": "vmlinuz",
                    "rootfs_path": "images/u.img",
                }
            ],
        )
        descriptor = load_catalog(path)[0]
        assert descriptor.kernel_path == tmp_path / "vmlinuz"
        assert descriptor.rootfs_path == tmp_path / "images" / "u.img"

    def test_missing_source(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_catalog(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "kernels.yaml"
        path.write_text("kernels: [unclosed\n")
        with pytest.raises(ConfigError):
            load_catalog(path)

    def test_entry_missing_field(self, tmp_path):
        path = _write_catalog(tmp_path / "kernels.yaml", [{"distro": "ubuntu"}])
        with pytest.raises(ConfigError, match="entry #0"):
            load_catalog(path)


# =============================================================================
# Fallback resolution
# =============================================================================


class TestResolveFallbacks:
    def test_nearest_lower_version(self, tmp_path):
        a2 = tmp_path / "a2.img"
        a1 = tmp_path / "a1.img"
        a2.touch()
        a1.touch()
        catalog = KernelCatalog(
            [
                make_descriptor("A", "3", "a3", tmp_path / "a3.img"),
                make_descriptor("A", "2", "a2", a2),
                make_descriptor("A", "1", "a1", a1),
                make_descriptor("B", "1", "b1", tmp_path / "b1.img"),
            ]
        )

        resolved = resolve_fallbacks(catalog)

        assert resolved.get(("A", "3", "a3")).rootfs_path == a2
        assert not resolved.get(("B", "1", "b1")).usable
        assert resolved.get(("A", "2", "a2")).rootfs_path == a2
        assert resolved.get(("A", "1", "a1")).rootfs_path == a1

    def test_catalog_order_is_independent_of_version_order(self, tmp_path):
        a1 = tmp_path / "a1.img"
        a2 = tmp_path / "a2.img"
        a1.touch()
        a2.touch()
        catalog = KernelCatalog(
            [
                make_descriptor("A", "1", "a1", a1),
                make_descriptor("A", "3", "a3", tmp_path / "missing.img"),
                make_descriptor("A", "2", "a2", a2),
            ]
        )

        resolved = resolve_fallbacks(catalog)

        assert [d.release for d in resolved] == ["a1", "a3", "a2"]
        assert resolved.get(("A", "3", "a3")).rootfs_path == a2

    def test_equal_version_is_not_a_fallback(self, tmp_path):
        present = tmp_path / "present.img"
        present.touch()
        catalog = KernelCatalog(
            [
                make_descriptor("A", "2", "a2-old", present),
                make_descriptor("A", "2", "a2-new", tmp_path / "missing.img"),
            ]
        )

        resolved = resolve_fallbacks(catalog)

        assert not resolved.get(("A", "2", "a2-new")).usable

    def test_other_distro_is_not_a_fallback(self, tmp_path):
        present = tmp_path / "b.img"
        present.touch()
        catalog = KernelCatalog(
            [
                make_descriptor("A", "2", "a2", tmp_path / "missing.img"),
                make_descriptor("B", "1", "b1", present),
            ]
        )
        assert not resolve_fallbacks(catalog).get(("A", "2", "a2")).usable

    def test_does_not_mutate_input(self, tmp_path):
        original = make_descriptor("A", "2", "a2", tmp_path / "missing.img")
        catalog = KernelCatalog([original])
        resolve_fallbacks(catalog)
        assert catalog[0] is original
        assert original.rootfs_path == tmp_path / "missing.img"


# =============================================================================
# Selection
# =============================================================================


def _ten_kernels() -> KernelCatalog:
    descriptors = []
    for i in range(10):
        distro = "ubuntu" if i in (2, 5, 8) else "debian"
        descriptors.append(make_descriptor(distro, str(i), f"rel-{i}", Path(f"/img/{i}")))
    return KernelCatalog(descriptors)


class TestSelectKernels:
    def test_first_matches_in_catalog_order(self):
        selected = select_kernels(_ten_kernels(), "ubuntu", guess_all=False, max_kernels=2)
        assert [d.release for d in selected] == ["rel-2", "rel-5"]

    def test_all_matches_without_limit(self):
        selected = select_kernels(_ten_kernels(), "ubuntu")
        assert len(selected) == 3

    def test_max_zero_fails(self):
        with pytest.raises(SelectionError):
            select_kernels(_ten_kernels(), "ubuntu", max_kernels=0)

    def test_no_match_fails(self):
        with pytest.raises(SelectionError, match="centos"):
            select_kernels(_ten_kernels(), "centos")

    def test_guess_all_ignores_pattern(self):
        selected = select_kernels(_ten_kernels(), "centos", guess_all=True, max_kernels=4)
        assert [d.release for d in selected] == ["rel-0", "rel-1", "rel-2", "rel-3"]

    def test_empty_pattern_selects_all(self):
        assert len(select_kernels(_ten_kernels(), "")) == 10

    def test_unusable_entries_excluded(self):
        catalog = KernelCatalog(
            [
                make_descriptor("ubuntu", "18.04", "a", None),
                make_descriptor("ubuntu", "16.04", "b", Path("/img/b")),
            ]
        )
        selected = select_kernels(catalog, "ubuntu", guess_all=True)
        assert [d.release for d in selected] == ["b"]

    def test_pattern_matches_release(self):
        selected = select_kernels(_ten_kernels(), r"rel-[79]$")
        assert [d.release for d in selected] == ["rel-7", "rel-9"]

    def test_invalid_regex(self):
        with pytest.raises(SelectionError, match="Invalid"):
            select_kernels(_ten_kernels(), "(")
