"""
QEMU virtual machine provider.

Machines boot with ``-snapshot`` so the shared rootfs image is never
written, and expose the guest's sshd on a private localhost port. Guest
commands and file transfer go through ssh/scp.
"""

from __future__ import annotations

import os
import shlex
import socket
import subprocess
import tempfile
import time
from pathlib import Path

import structlog

from kmatrix.artifact import SecurityToggles
from kmatrix.catalog.models import KernelDescriptor
from kmatrix.errors import LaunchFailed, RunTimeoutError
from kmatrix.providers.base import Machine, VMProvider
from kmatrix.providers.process import CommandResult, run_command, stop_process

logger = structlog.get_logger()

SSH_CHECK_TIMEOUT = 10.0
SSH_RETRY_INTERVAL = 1.0


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def kernel_cmdline(toggles: SecurityToggles) -> list[str]:
    """Kernel command line switches for the requested mitigations."""
    args = ["root=/dev/sda", "console=ttyS0", "panic=-1"]
    args.append("kaslr" if toggles.kaslr else "nokaslr")
    if not toggles.smep:
        args.append("nosmep")
    if not toggles.smap:
        args.append("nosmap")
    args.append("pti=on" if toggles.kpti else "nopti")
    return args


def cpu_flags(toggles: SecurityToggles) -> str:
    """CPU model with SMEP/SMAP exposed or hidden."""
    smep = "+smep" if toggles.smep else "-smep"
    smap = "+smap" if toggles.smap else "-smap"
    return f"max,{smep},{smap}"


class QemuMachine(Machine):
    """A running qemu process reachable over forwarded ssh."""

    def __init__(
        self,
        process: subprocess.Popen,
        port: int,
        console_path: Path,
        ssh_user: str = "root",
        ssh_key: Path | None = None,
    ) -> None:
        self.process = process
        self.port = port
        self.console_path = console_path
        self.ssh_user = ssh_user
        self.ssh_key = ssh_key
        self._stopped = False

    def _ssh_options(self) -> list[str]:
        options = [
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=5",
        ]
        if self.ssh_key:
            options += ["-i", str(self.ssh_key)]
        return options

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def execute(self, command: str, timeout: float | None) -> CommandResult:
        cmd = [
            "ssh",
            *self._ssh_options(),
            "-p", str(self.port),
            f"{self.ssh_user}@127.0.0.1",
            command,
        ]
        return run_command(cmd, timeout=timeout)

    def copy_to(self, local: Path, remote: str, timeout: float | None) -> CommandResult:
        cmd = [
            "scp",
            *self._ssh_options(),
            "-P", str(self.port),
            str(local),
            f"{self.ssh_user}@127.0.0.1:{shlex.quote(remote)}",
        ]
        return run_command(cmd, timeout=timeout)

    def console_output(self) -> str:
        try:
            return self.console_path.read_text(errors="replace")
        except OSError:
            return ""

    def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        stop_process(self.process)
        logger.debug("Machine stopped", pid=self.process.pid, port=self.port)
        try:
            self.console_path.unlink()
        except FileNotFoundError:
            pass


class QemuVMProvider(VMProvider):
    name = "qemu"

    def __init__(
        self,
        binary: str = "qemu-system-x86_64",
        memory_mb: int = 256,
        cpus: int = 1,
        ssh_user: str = "root",
        ssh_key: Path | None = None,
        kvm: bool | None = None,
    ) -> None:
        self.binary = binary
        self.memory_mb = memory_mb
        self.cpus = cpus
        self.ssh_user = ssh_user
        self.ssh_key = ssh_key
        if kvm is None:
            kvm = os.access("/dev/kvm", os.R_OK | os.W_OK)
        self.kvm = kvm

    def command(self, target: KernelDescriptor, toggles: SecurityToggles, port: int) -> list[str]:
        cmd = [
            self.binary,
            "-nographic",
            "-no-reboot",
            "-m", str(self.memory_mb),
            "-smp", str(self.cpus),
            "-cpu", cpu_flags(toggles),
            "-kernel", str(target.kernel_path),
        ]
        if target.initrd_path:
            cmd += ["-initrd", str(target.initrd_path)]
        cmd += [
            "-drive", f"file={target.rootfs_path},format=raw,if=ide",
            "-snapshot",
            "-netdev", f"user,id=net0,hostfwd=tcp:127.0.0.1:{port}-:22",
            "-device", "e1000,netdev=net0",
            "-append", " ".join(kernel_cmdline(toggles)),
        ]
        if self.kvm:
            cmd.append("-enable-kvm")
        return cmd

    def launch(
        self,
        target: KernelDescriptor,
        toggles: SecurityToggles,
        timeout: float | None,
    ) -> QemuMachine:
        if not target.usable:
            raise LaunchFailed(f"No rootfs for {target.description}")

        port = _free_port()
        cmd = self.command(target, toggles, port)
        console_fd, console_name = tempfile.mkstemp(prefix="kmatrix-console-", suffix=".log")

        logger.info("Booting machine", kernel=target.description, port=port)
        logger.debug("qemu command", cmd=shlex.join(cmd))

        try:
            with os.fdopen(console_fd, "w") as console:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=console,
                    stderr=subprocess.STDOUT,
                )
        except OSError as exc:
            Path(console_name).unlink(missing_ok=True)
            raise LaunchFailed(f"Cannot start {self.binary}: {exc}") from exc

        machine = QemuMachine(
            process,
            port,
            Path(console_name),
            ssh_user=self.ssh_user,
            ssh_key=self.ssh_key,
        )

        try:
            self._wait_ready(machine, timeout)
        except BaseException:
            machine.shutdown()
            raise
        return machine

    def _wait_ready(self, machine: QemuMachine, timeout: float | None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if not machine.running:
                raise LaunchFailed(
                    f"qemu exited with {machine.process.returncode} during boot",
                    output=machine.console_output(),
                )

            check_timeout = SSH_CHECK_TIMEOUT
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RunTimeoutError(
                        f"Machine not reachable after {timeout}s",
                        reason="launch_timeout",
                        output=machine.console_output(),
                    )
                check_timeout = min(check_timeout, remaining)

            if machine.execute("true", timeout=check_timeout).ok:
                logger.debug("Machine ready", port=machine.port)
                return
            time.sleep(SSH_RETRY_INTERVAL)
