"""Supervisor for a single SONiC VS hypervisor process.

A VirtualDevice owns at most one QEMU process and one monitor task for
it. The monitor pumps the process output into the log and waits for the
exit; an exit that nobody asked for is logged as an error. Stop marks
the exit as expected before signalling, so the monitor stays quiet
during a normal shutdown.

Lifecycle: UNSTARTED -> STARTING -> READY -> STOPPING -> STOPPED.
A crash moves STARTING or READY to STOPPED from the monitor task.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from vsharness.config import settings
from vsharness.errors import (
    AlreadyRunningError,
    ConstructionError,
    LaunchError,
    ReadinessTimeout,
    StopError,
)
from vsharness.remote import CommandChannel, ConnectionParams, SSHChannel, probe

logger = logging.getLogger(__name__)

# Files in the device working directory
OS_IMAGE_FILE = "sonic-vs.qcow2"
EFI_CODE_FILE = "efi_code.fd"
EFI_VARS_FILE = "efi_vars.fd"
SERIAL_LOG = "serial.log"
SERIAL_SOCK = "serial.sock"
MON_SOCK = "mon.sock"

REQUIRED_FILES = (OS_IMAGE_FILE, EFI_CODE_FILE, EFI_VARS_FILE)

QCOW2_MAGIC = b"QFI\xfb"

# Guest-side ports of the forwarded services
GUEST_SSH_PORT = 22
GUEST_GNMI_PORT = 8080


class DeviceState(str, Enum):
    """Lifecycle state of a VirtualDevice."""
    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DeviceConfig:
    """Caller-supplied device configuration.

    Empty or zero values are replaced with defaults from settings when
    the VirtualDevice is constructed.
    """
    name: str
    work_dir: str
    memory: str = ""
    cpus: int = 0
    ssh_port: int = 0
    gnmi_port: int = 0
    ssh_key_path: str = ""
    username: str = ""


def detect_image_format(path: str | Path) -> str:
    """Return "qcow2" if the file starts with the qcow2 magic, else "raw"."""
    try:
        with open(path, "rb") as f:
            header = f.read(4)
    except OSError as e:
        raise LaunchError(f"reading image header of {path}: {e}") from e
    if len(header) < 4:
        raise LaunchError(f"reading image header of {path}: file is too short")
    if header == QCOW2_MAGIC:
        return "qcow2"
    return "raw"


class VirtualDevice:
    """One disposable SONiC VS instance under QEMU."""

    def __init__(self, config: DeviceConfig):
        if not config.name:
            raise ConstructionError("VM name is required")
        if not config.work_dir:
            raise ConstructionError("work directory is required")

        config = replace(
            config,
            memory=config.memory or settings.vm_memory,
            cpus=config.cpus or settings.vm_cpus,
            ssh_port=config.ssh_port or settings.ssh_port,
            gnmi_port=config.gnmi_port or settings.gnmi_port,
            ssh_key_path=config.ssh_key_path or settings.ssh_key_path,
            username=config.username or settings.ssh_username,
        )

        for file_name in REQUIRED_FILES:
            path = Path(config.work_dir) / file_name
            if not path.is_file():
                raise ConstructionError(f"required file {file_name} not found in {config.work_dir}")

        self.config = config
        self.state = DeviceState.UNSTARTED
        self._process: asyncio.subprocess.Process | None = None
        self._monitor: asyncio.Task | None = None
        self._expected_exit = False

    # --- Accessors ---

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def ssh_address(self) -> str:
        return f"localhost:{self.config.ssh_port}"

    def gnmi_address(self) -> str:
        return f"localhost:{self.config.gnmi_port}"

    def serial_log_path(self) -> Path:
        return Path(self.config.work_dir) / SERIAL_LOG

    def connection_params(self) -> ConnectionParams:
        """SSH connection parameters for the forwarded port."""
        return ConnectionParams(
            host="localhost",
            port=self.config.ssh_port,
            username=self.config.username,
            key_path=self.config.ssh_key_path,
            connect_timeout=settings.ssh_connect_timeout,
            command_timeout=settings.ssh_command_timeout,
        )

    def channel(self, timeout: float | None = None) -> CommandChannel:
        params = self.connection_params()
        if timeout is not None:
            params = params.with_timeout(timeout)
        return SSHChannel(params)

    def qemu_args(self, efi_format: str) -> list[str]:
        """Build the QEMU argument list (relative file names, run in work_dir)."""
        cfg = self.config
        return [
            "-name", cfg.name,
            "-m", cfg.memory,
            "-machine", "q35,accel=kvm,smm=on",
            "-cpu", "host",
            "-smp", str(cfg.cpus),
            "-object", "rng-random,filename=/dev/urandom,id=rng0",
            "-device", "virtio-rng-pci,rng=rng0",
            # Disk
            "-drive", f"if=none,file={OS_IMAGE_FILE},id=disk1",
            "-device", "virtio-blk-pci,drive=disk1,bootindex=1",
            # EFI firmware
            "-drive", f"if=pflash,file={EFI_CODE_FILE},format={efi_format},readonly=on",
            "-drive", f"if=pflash,file={EFI_VARS_FILE},format={efi_format}",
            # Serial console, also captured to a log file
            "-nographic",
            "-chardev",
            f"socket,id=serial,path={SERIAL_SOCK},server=on,wait=off,signal=off,logfile={SERIAL_LOG}",
            "-serial", "chardev:serial",
            "-monitor", f"unix:{MON_SOCK},server,nowait",
            # User mode networking; SONiC expects e1000 rather than virtio-net
            "-netdev",
            f"user,id=mgmt,hostfwd=tcp::{cfg.ssh_port}-:{GUEST_SSH_PORT},"
            f"hostfwd=tcp::{cfg.gnmi_port}-:{GUEST_GNMI_PORT}",
            "-device", "e1000,netdev=mgmt",
            # Disable S3 sleep
            "-global", "ICH9-LPC.disable_s3=1",
        ]

    # --- Lifecycle ---

    async def start(self) -> None:
        """Launch the hypervisor. Returns once the process exists, not when it is ready.

        Raises:
            AlreadyRunningError: If this instance already owns a process
            LaunchError: If the process could not be started
        """
        if self._process is not None:
            raise AlreadyRunningError(f"VM {self.name} already running")

        efi_format = detect_image_format(Path(self.config.work_dir) / EFI_CODE_FILE)
        args = self.qemu_args(efi_format)

        logger.info(
            f"Starting SONiC VS {self.name}: memory={self.config.memory} "
            f"cpus={self.config.cpus} ssh_port={self.config.ssh_port} "
            f"gnmi_port={self.config.gnmi_port}"
        )
        logger.debug(f"QEMU command: {settings.qemu_binary} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                settings.qemu_binary,
                *args,
                cwd=self.config.work_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchError(f"starting QEMU for {self.name}: {e}") from e

        self._process = process
        self._expected_exit = False
        self.state = DeviceState.STARTING
        self._monitor = asyncio.create_task(
            self._watch(process), name=f"vm-monitor-{self.name}",
        )
        logger.info(f"SONiC VS {self.name} started (pid {process.pid})")

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        prefix = f"[{self.name}]"
        returncode, _, _ = await asyncio.gather(
            process.wait(),
            _pump(process.stdout, logging.DEBUG, prefix),
            _pump(process.stderr, logging.WARNING, prefix),
        )
        if self._expected_exit:
            return
        logger.error(f"QEMU process for {self.name} exited unexpectedly with code {returncode}")
        if self._process is process:
            self._process = None
            self._monitor = None
            self.state = DeviceState.STOPPED

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the hypervisor, escalating to a kill after timeout seconds.

        A device that was never started or already stopped is left alone.

        Raises:
            StopError: If the process could not be reaped even after a kill
        """
        process = self._process
        if process is None:
            return
        if timeout is None:
            timeout = settings.stop_timeout

        logger.info(f"Stopping SONiC VS {self.name}")
        self.state = DeviceState.STOPPING
        self._expected_exit = True

        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError as e:
            logger.warning(f"Failed to send SIGINT to QEMU for {self.name}: {e}")

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"VM {self.name} shutdown timeout, force killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise StopError(f"VM {self.name} did not exit after kill") from e

        if process.returncode not in (0, -signal.SIGINT):
            logger.warning(f"VM {self.name} exited with code {process.returncode}")

        monitor = self._monitor
        self._process = None
        self._monitor = None
        self.state = DeviceState.STOPPED
        if monitor is not None:
            await monitor
        logger.info(f"SONiC VS {self.name} stopped")

    async def check_ssh(self) -> None:
        """Run the readiness probe once. Raises RemoteCommandError on failure."""
        await probe(self.channel(timeout=settings.probe_timeout))

    async def wait_ready(self, timeout: float | None = None, interval: float | None = None) -> int:
        """Poll the readiness probe until it succeeds.

        The process is left untouched on timeout; the caller decides
        whether to stop it.

        Returns:
            Number of probe attempts it took

        Raises:
            ReadinessTimeout: If the probe did not succeed within timeout
        """
        if timeout is None:
            timeout = settings.ready_timeout
        if interval is None:
            interval = settings.ready_poll_interval

        logger.info(f"Waiting for SONiC VS {self.name} to be ready (timeout {timeout:g}s)")
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(self.name, timeout, attempt)
            await asyncio.sleep(min(interval, remaining))

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(self.name, timeout, attempt)
            attempt += 1
            logger.debug(f"Checking SSH availability of {self.name} (attempt {attempt})")
            try:
                await asyncio.wait_for(self.check_ssh(), timeout=remaining)
            except asyncio.TimeoutError:
                raise ReadinessTimeout(self.name, timeout, attempt)
            except Exception as e:
                logger.debug(f"SSH on {self.name} not ready yet: {e}")
                continue

            if self.state == DeviceState.STARTING:
                self.state = DeviceState.READY
            logger.info(f"SONiC VS {self.name} is ready after {attempt} attempts")
            return attempt

    async def run_command(self, command: str) -> str:
        """Run one command on the device over SSH."""
        return await self.channel().exec(command)


async def _pump(stream: asyncio.StreamReader | None, level: int, prefix: str) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode(errors="replace").strip()
        if text:
            logger.log(level, f"{prefix} {text}")
