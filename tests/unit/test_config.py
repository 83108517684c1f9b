"""Unit tests for MatrixConfig loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from kmatrix.config import ENV_DB, ENV_USER_KERNELS, MatrixConfig
from kmatrix.errors import ConfigError
from kmatrix.reliability import TimeoutPolicy


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(ENV_USER_KERNELS, raising=False)
    monkeypatch.delenv(ENV_DB, raising=False)


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = MatrixConfig.load(tmp_path / "config.yaml")

        assert config.home == tmp_path
        assert config.kernels_path == tmp_path / "kernels.yaml"
        assert config.user_kernels_path == tmp_path / "kernels.user.yaml"
        assert config.db_path == tmp_path / "results.db"
        assert config.work_dir == tmp_path / "work"
        assert config.archives_dir is None
        assert config.reliability.threshold == 1.0
        assert config.reliability.timeout_policy is TimeoutPolicy.COUNT
        assert config.scheduling.concurrency >= 1
        assert config.scheduling.global_timeout_seconds is None

    def test_home_defaults_to_user_dir(self):
        config = MatrixConfig()
        assert config.home == Path.home() / ".kmatrix"


class TestLoad:
    def test_sections(self, tmp_path):
        path = _write(
            tmp_path / "config.yaml",
            {
                "kernels": "catalogs/main.yaml",
                "database": "/var/lib/kmatrix.db",
                "archives_dir": "archives",
                "qemu": {"memory_mb": "1024", "ssh_key": "~/.ssh/kmatrix", "kvm": False},
                "docker": {"registry": "registry.local", "unknown": 1},
                "scheduling": {"concurrency": 4, "global_timeout_seconds": 3600},
                "reliability": {"threshold": 0.9, "timeout_policy": "exclude"},
            },
        )
        config = MatrixConfig.load(path)

        assert config.kernels_path == tmp_path / "catalogs" / "main.yaml"
        assert config.db_path == Path("/var/lib/kmatrix.db")
        assert config.archives_dir == tmp_path / "archives"
        assert config.qemu.memory_mb == 1024
        assert config.qemu.ssh_key == Path.home() / ".ssh" / "kmatrix"
        assert config.qemu.kvm is False
        assert config.docker.registry == "registry.local"
        assert config.scheduling.concurrency == 4
        assert config.scheduling.global_timeout_seconds == 3600.0
        assert config.reliability.threshold == 0.9
        assert config.reliability.timeout_policy is TimeoutPolicy.EXCLUDE

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_USER_KERNELS, str(tmp_path / "mine.yaml"))
        monkeypatch.setenv(ENV_DB, str(tmp_path / "mine.db"))

        config = MatrixConfig.load(tmp_path / "config.yaml")

        assert config.user_kernels_path == tmp_path / "mine.yaml"
        assert config.db_path == tmp_path / "mine.db"

    def test_invalid_threshold(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"reliability": {"threshold": 0}})
        with pytest.raises(ConfigError, match="threshold"):
            MatrixConfig.load(path)

    def test_invalid_timeout_policy(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"reliability": {"timeout_policy": "ignore"}})
        with pytest.raises(ConfigError):
            MatrixConfig.load(path)

    def test_invalid_concurrency(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"scheduling": {"concurrency": 0}})
        with pytest.raises(ConfigError, match="concurrency"):
            MatrixConfig.load(path)

    def test_section_must_be_mapping(self, tmp_path):
        path = _write(tmp_path / "config.yaml", {"qemu": ["not", "a", "mapping"]})
        with pytest.raises(ConfigError, match="qemu"):
            MatrixConfig.load(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("just a string\n")
        with pytest.raises(ConfigError):
            MatrixConfig.load(path)
