"""
Providers - external build and VM services.

Modules:
    base        - BuildProvider / VMProvider / Machine interfaces
    process     - Subprocess execution with timeouts
    docker      - Container-based artifact builds
    qemu        - QEMU test machines
"""

from kmatrix.providers.base import BuildOutput, BuildProvider, Machine, VMProvider
from kmatrix.providers.docker import DockerBuildProvider, check_docker_access
from kmatrix.providers.process import CommandResult, check_required_tools, run_command
from kmatrix.providers.qemu import QemuMachine, QemuVMProvider

__all__ = [
    "BuildOutput",
    "BuildProvider",
    "CommandResult",
    "DockerBuildProvider",
    "Machine",
    "QemuMachine",
    "QemuVMProvider",
    "VMProvider",
    "check_docker_access",
    "check_required_tools",
    "run_command",
]
