"""Test run sequencing around one disposable device.

Order: build agent (optional) -> start VM -> wait for SSH -> prepare the
test environment -> uninstall leftovers -> install agent -> test body ->
uninstall -> stop VM.

Any setup failure stops the VM and ends the run with exit code 1. The
test body's exit code is returned unchanged. With keep_on_failure set, a
failing body leaves the VM running until the run is cancelled (Ctrl+C),
so it can be inspected.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from vsharness.agent_manager import AgentManager
from vsharness.cmd import run_cmd
from vsharness.config import settings
from vsharness.device import DeviceConfig, VirtualDevice
from vsharness.errors import HarnessError, StopError

logger = logging.getLogger(__name__)

# Exported to the test body so live tests can reach the device
LIVE_SSH_ENV = "VSHARNESS_LIVE_SSH"
LIVE_SSH_KEY_ENV = "VSHARNESS_LIVE_SSH_KEY"
LIVE_SSH_USER_ENV = "VSHARNESS_LIVE_SSH_USER"
LIVE_GNMI_ENV = "VSHARNESS_LIVE_GNMI"
LIVE_SERIAL_LOG_ENV = "VSHARNESS_LIVE_SERIAL_LOG"


@dataclass
class SessionOptions:
    """Knobs for one orchestrated run."""
    agent_binary: str = field(default_factory=lambda: settings.agent_binary)
    image_dir: str = field(default_factory=lambda: settings.image_dir)
    vm_name: str = field(default_factory=lambda: settings.vm_name)
    build_agent: bool = True
    keep_on_failure: bool = False
    ready_timeout: float = field(default_factory=lambda: settings.ready_timeout)
    cleanup_timeout: float = field(default_factory=lambda: settings.cleanup_timeout)
    stop_timeout: float = field(default_factory=lambda: settings.stop_timeout)


@dataclass
class HarnessSession:
    """What the test body gets to work with."""
    device: VirtualDevice
    manager: AgentManager


SessionBody = Callable[[HarnessSession], Awaitable[int]]
DeviceFactory = Callable[[DeviceConfig], VirtualDevice]
ManagerFactory = Callable[[VirtualDevice], AgentManager]


def _default_manager(device: VirtualDevice) -> AgentManager:
    return AgentManager(device.channel())


class Orchestrator:
    """Runs a test body against a freshly provisioned device."""

    def __init__(
        self,
        options: SessionOptions | None = None,
        device_factory: DeviceFactory = VirtualDevice,
        manager_factory: ManagerFactory = _default_manager,
    ):
        self.options = options or SessionOptions()
        self.device_factory = device_factory
        self.manager_factory = manager_factory

    async def build_agent(self) -> bool:
        """Build the agent binary from source with settings.build_command."""
        logger.info(f"Building agent binary with '{settings.build_command}'")
        fabric_root = os.path.abspath(settings.fabric_root)
        try:
            code, stdout, stderr = await run_cmd(shlex.split(settings.build_command), cwd=fabric_root)
        except OSError as e:
            logger.error(f"Failed to build agent: {e}")
            return False
        if code != 0:
            logger.error(f"Failed to build agent (exit code {code}): {stderr.strip() or stdout.strip()}")
            return False
        logger.info(f"Agent binary built successfully: {self.options.agent_binary}")
        return True

    async def run(self, body: SessionBody) -> int:
        """Provision, run body, tear down. Returns the run's exit code."""
        opts = self.options
        logger.info(
            f"Setting up SONiC VS for integration tests: image_dir={opts.image_dir} "
            f"agent_binary={opts.agent_binary}"
        )

        if opts.build_agent and not await self.build_agent():
            return 1

        try:
            device = self.device_factory(DeviceConfig(name=opts.vm_name, work_dir=opts.image_dir))
        except HarnessError as e:
            logger.error(f"Failed to create VM: {e}")
            return 1

        try:
            await device.start()
        except HarnessError as e:
            logger.error(f"Failed to start VM: {e}")
            return 1

        logger.info("Waiting for SONiC VS to boot and be ready...")
        try:
            await device.wait_ready(timeout=opts.ready_timeout)
        except HarnessError as e:
            await self._abort(device, "VM not ready", e)
            return 1

        logger.info(f"SONiC VS is ready: ssh={device.ssh_address()} gnmi={device.gnmi_address()}")
        manager = self.manager_factory(device)

        logger.info("Preparing test environment...")
        try:
            await manager.prepare_test_environment()
        except (HarnessError, OSError) as e:
            await self._abort(device, "Failed to prepare test environment", e)
            return 1

        logger.info("Ensuring clean slate - uninstalling any existing agent...")
        try:
            await manager.uninstall()
        except HarnessError as e:
            logger.warning(f"Failed to uninstall existing agent: {e}")

        logger.info("Installing agent on SONiC VS...")
        try:
            await manager.install(opts.agent_binary)
        except (HarnessError, OSError) as e:
            await self._abort(device, "Failed to install agent", e)
            return 1

        try:
            status = await manager.get_status()
            logger.info(f"Agent status: {status.describe()}")
        except HarnessError as e:
            logger.error(f"Failed to get agent status: {e}")

        logger.info("Test environment ready - running tests...")
        try:
            code = await body(HarnessSession(device=device, manager=manager))
            if code != 0 and opts.keep_on_failure:
                await self._hold(device)
        finally:
            await self._teardown(device, manager)
        return code

    async def _abort(self, device: VirtualDevice, what: str, error: Exception) -> None:
        logger.error(f"{what}: {error}")
        logger.info(f"Serial log available at {device.serial_log_path()}")
        await self._stop(device)

    async def _hold(self, device: VirtualDevice) -> None:
        logger.warning(
            f"Tests failed - keeping VM running for debugging: ssh={device.ssh_address()} "
            f"serial_log={device.serial_log_path()}"
        )
        host, _, port = device.ssh_address().rpartition(":")
        logger.info(
            f"To connect: ssh -i {device.config.ssh_key_path} -p {port} "
            f"{device.config.username}@{host}"
        )
        logger.info("Press Ctrl+C to stop VM and exit")
        await asyncio.Event().wait()

    async def _teardown(self, device: VirtualDevice, manager: AgentManager) -> None:
        logger.info("Cleaning up - uninstalling agent...")
        try:
            await asyncio.wait_for(manager.uninstall(), timeout=self.options.cleanup_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Failed to uninstall agent during cleanup: timed out after "
                f"{self.options.cleanup_timeout:g}s"
            )
        except HarnessError as e:
            logger.warning(f"Failed to uninstall agent during cleanup: {e}")

        logger.info("Stopping SONiC VS...")
        await self._stop(device)

    async def _stop(self, device: VirtualDevice) -> None:
        try:
            await device.stop(timeout=self.options.stop_timeout)
        except StopError as e:
            logger.error(f"Failed to stop VM: {e}")


def pytest_body(pytest_args: Sequence[str]) -> SessionBody:
    """Test body that runs pytest against the live device.

    Device addresses are exported through VSHARNESS_LIVE_* environment
    variables before pytest starts.
    """
    import pytest

    async def body(session: HarnessSession) -> int:
        device = session.device
        os.environ.update({
            LIVE_SSH_ENV: device.ssh_address(),
            LIVE_SSH_KEY_ENV: device.config.ssh_key_path,
            LIVE_SSH_USER_ENV: device.config.username,
            LIVE_GNMI_ENV: device.gnmi_address(),
            LIVE_SERIAL_LOG_ENV: str(device.serial_log_path()),
        })
        code = await asyncio.to_thread(pytest.main, list(pytest_args))
        return int(code)

    return body
