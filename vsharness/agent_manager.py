"""Fabric agent lifecycle on a SONiC VS device.

Install and uninstall converge on an end state instead of replaying a
fixed script: uninstalling an absent agent succeeds without touching the
device, and installing over an existing agent uninstalls it first so
every install starts from a clean slate.

Each operation is a list of steps for the step runner. Removing the unit
file and the agent directories is fatal on failure because a leftover
would make the next install unreliable. Stopping and disabling the
service only matter until the directories are gone, so they are
best-effort.

The agent state is never cached; every status query probes the device.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path

from vsharness.cache import DownloadCache, alloy_cache
from vsharness.config import settings
from vsharness.errors import RemoteCommandError, VerificationError
from vsharness.remote import CommandChannel, ConnectionParams, SSHChannel
from vsharness.schemas import AgentState, AgentStatus
from vsharness.steps import Step, StepOutcome, best_effort, fatal, run_steps

logger = logging.getLogger(__name__)

# Agent layout on the device
AGENT_BINARY_PATH = "/opt/hedgehog/bin/agent"
AGENT_SERVICE_FILE = "/etc/systemd/system/hedgehog-agent.service"
AGENT_CONFIG_DIR = "/etc/hedgehog"
AGENT_INSTALL_DIR = "/opt/hedgehog"
AGENT_SERVICE_NAME = "hedgehog-agent"
AGENT_LOG_FILE = "/var/log/agent.log"
AGENT_UPLOAD_PATH = "/tmp/agent"
RC_SCRIPT_PATTERN = "*hedgehog*"

# Test environment fixups
DHCP_SERVICE_FILE = "/etc/systemd/system/eth0-dhcp.service"
DHCP_SERVICE_NAME = "eth0-dhcp"
ALLOY_BINARY_PATH = "/usr/local/bin/alloy"
ALLOY_UPLOAD_PATH = "/tmp/alloy"

AGENT_SERVICE_UNIT = f"""[Unit]
Description=Hedgehog Fabric Agent
After=network.target

[Service]
Type=simple
ExecStart={AGENT_BINARY_PATH} start
Restart=always
RestartSec=10
StandardOutput=journal
StandardError=journal

[Install]
WantedBy=multi-user.target
"""

# Type=simple reports the unit inactive once dhclient daemonizes inside
# the VM; oneshot with RemainAfterExit keeps it active after a lease.
DHCP_SERVICE_UNIT = """[Unit]
Description=DHCP client for eth0
After=network.target

[Service]
Type=oneshot
ExecStart=/sbin/dhclient -v eth0
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def heredoc_write(path: str, content: str) -> str:
    """Shell command writing content to path as root."""
    return f"sudo tee {path} > /dev/null <<'EOF'\n{content}EOF"


class AgentManager:
    """Installs, removes and inspects the agent through a CommandChannel."""

    component = "agent-manager"

    def __init__(
        self,
        channel: CommandChannel,
        cache: DownloadCache | None = None,
        alloy_version: str | None = None,
    ):
        self.channel = channel
        self.cache = cache if cache is not None else alloy_cache()
        self.alloy_version = alloy_version or settings.alloy_version

    @classmethod
    def from_params(cls, params: ConnectionParams, **kwargs) -> "AgentManager":
        return cls(SSHChannel(params), **kwargs)

    async def _run(self, command: str) -> str:
        return await self.channel.exec(command)

    async def _run_steps(self, operation: str, steps: list[Step]) -> list[StepOutcome]:
        outcomes = await run_steps(self.component, steps)
        skipped = [o.name for o in outcomes if not o.ok]
        if skipped:
            logger.warning(f"{operation} finished with skipped steps: {', '.join(skipped)}")
        return outcomes

    # --- Probes ---

    async def is_installed(self) -> bool:
        output = await self._run(
            f"test -f {AGENT_BINARY_PATH} && echo installed || echo not-installed"
        )
        return output.strip() == "installed"

    async def is_running(self) -> bool:
        output = await self._run(
            f"systemctl is-active {AGENT_SERVICE_NAME} 2>/dev/null || echo inactive"
        )
        return output.strip() == "active"

    async def is_enabled(self) -> bool:
        output = await self._run(
            f"systemctl is-enabled {AGENT_SERVICE_NAME} 2>/dev/null || echo disabled"
        )
        return output.strip() == "enabled"

    async def get_status(self) -> AgentStatus:
        """Probe the device for the current agent state."""
        if not await self.is_installed():
            return AgentStatus(state=AgentState.NOT_INSTALLED)
        if not await self.is_running():
            return AgentStatus(state=AgentState.INSTALLED_STOPPED)

        try:
            output = await self._run(
                f"ps aux | grep '{AGENT_BINARY_PATH}' | grep -v grep || echo ''"
            )
        except RemoteCommandError as e:
            logger.debug(f"Could not read agent process details: {e}")
            return AgentStatus(state=AgentState.INSTALLED_RUNNING)
        return AgentStatus(state=AgentState.INSTALLED_RUNNING, process=output.strip())

    # --- Uninstall ---

    def _uninstall_steps(self) -> list[Step]:
        run = self._run
        return [
            best_effort(
                "stop agent service",
                lambda: run(f"sudo systemctl stop {AGENT_SERVICE_NAME} 2>/dev/null || true"),
            ),
            best_effort(
                "disable agent service",
                lambda: run(f"sudo systemctl disable {AGENT_SERVICE_NAME} 2>/dev/null || true"),
            ),
            fatal("remove service file", lambda: run(f"sudo rm -f {AGENT_SERVICE_FILE}")),
            best_effort("reload systemd", lambda: run("sudo systemctl daemon-reload")),
            fatal("remove install directory", lambda: run(f"sudo rm -rf {AGENT_INSTALL_DIR}")),
            fatal("remove config directory", lambda: run(f"sudo rm -rf {AGENT_CONFIG_DIR}")),
            best_effort(
                "remove startup scripts",
                lambda: run(
                    f"sudo find /etc/rc*.d -name '{RC_SCRIPT_PATTERN}' -delete 2>/dev/null || true"
                ),
            ),
        ]

    async def uninstall(self) -> bool:
        """Remove the agent from the device.

        Returns:
            False if the agent was not installed, True if it was removed

        Raises:
            StepError: If a fatal removal step failed
            VerificationError: If the agent binary is still present afterwards
        """
        logger.info("Uninstalling Hedgehog agent from SONiC VM")
        if not await self.is_installed():
            logger.info("Agent not installed, nothing to uninstall")
            return False

        await self._run_steps("Uninstall", self._uninstall_steps())

        if await self.is_installed():
            raise VerificationError("agent still appears to be installed after uninstallation")

        logger.info("Agent successfully uninstalled from SONiC VM")
        return True

    # --- Install ---

    def _install_steps(self, binary: Path) -> list[Step]:
        run = self._run
        return [
            fatal(
                "create bin directory",
                lambda: run(f"sudo mkdir -p {posixpath.dirname(AGENT_BINARY_PATH)}"),
            ),
            fatal("create config directory", lambda: run(f"sudo mkdir -p {AGENT_CONFIG_DIR}")),
            best_effort("clean old agent log", lambda: run(f"sudo rm -f {AGENT_LOG_FILE}")),
            fatal(
                "copy agent binary",
                lambda: self.channel.transfer(binary, AGENT_UPLOAD_PATH),
            ),
            fatal(
                "install agent binary",
                lambda: run(
                    f"sudo mv {AGENT_UPLOAD_PATH} {AGENT_BINARY_PATH} "
                    f"&& sudo chmod +x {AGENT_BINARY_PATH}"
                ),
            ),
            fatal(
                "create service file",
                lambda: run(heredoc_write(AGENT_SERVICE_FILE, AGENT_SERVICE_UNIT)),
            ),
            fatal("reload systemd", lambda: run("sudo systemctl daemon-reload")),
            fatal("enable agent service", lambda: run(f"sudo systemctl enable {AGENT_SERVICE_NAME}")),
            fatal("start agent service", lambda: run(f"sudo systemctl start {AGENT_SERVICE_NAME}")),
        ]

    async def install(self, binary_path: str | Path) -> AgentStatus:
        """Install the agent binary, enable and start its service.

        Safe to call repeatedly: an existing installation is removed first.

        Returns:
            Agent status right after installation

        Raises:
            FileNotFoundError: If the local binary does not exist (before any remote call)
            StepError: If a fatal install step failed
            VerificationError: If the binary or the enabled unit is missing afterwards
        """
        binary = Path(binary_path)
        if not binary.is_file():
            raise FileNotFoundError(f"agent binary not found at {binary}")

        logger.info(f"Installing Hedgehog agent on SONiC VM from {binary}")

        if await self.is_installed():
            logger.warning("Agent already installed, uninstalling first")
            await self.uninstall()

        await self._run_steps("Install", self._install_steps(binary))

        if not await self.is_installed():
            raise VerificationError("agent not found after installation")

        try:
            enabled = await self.is_enabled()
        except RemoteCommandError as e:
            logger.warning(f"Could not verify service is enabled: {e}")
            enabled = False
        if not enabled:
            raise VerificationError("agent service not enabled after installation")

        # The agent may wait for the SONiC system to be ready before it starts
        try:
            running = await self.is_running()
        except RemoteCommandError as e:
            logger.warning(f"Could not check if agent is running: {e}")
            running = False

        if running:
            logger.info("Agent successfully installed and started on SONiC VM")
            return AgentStatus(state=AgentState.INSTALLED_RUNNING, process="")
        logger.info(
            "Agent successfully installed on SONiC VM; "
            "service will start when SONiC system is ready"
        )
        return AgentStatus(state=AgentState.INSTALLED_STOPPED)

    # --- Test environment ---

    async def prepare_test_environment(self) -> None:
        """Adapt a freshly booted VM for testing.

        Rewrites the eth0 DHCP unit so it reports active after getting a
        lease, and makes sure Grafana Alloy is installed, since the agent
        configuration references it.
        """
        logger.info("Preparing SONiC VM test environment")
        run = self._run
        await self._run_steps("Prepare test environment", [
            fatal(
                "update eth0-dhcp service",
                lambda: run(heredoc_write(DHCP_SERVICE_FILE, DHCP_SERVICE_UNIT)),
            ),
            fatal("reload systemd", lambda: run("sudo systemctl daemon-reload")),
            best_effort(
                "restart eth0-dhcp",
                lambda: run(f"sudo systemctl restart {DHCP_SERVICE_NAME}"),
            ),
        ])

        await self.ensure_alloy()
        logger.info("Test environment prepared successfully")

    async def _alloy_version(self) -> str | None:
        try:
            output = await self._run(f"{ALLOY_BINARY_PATH} --version")
        except RemoteCommandError as e:
            logger.warning(f"Could not verify alloy installation: {e}")
            return None
        return output.strip()

    async def ensure_alloy(self) -> bool:
        """Install Alloy on the device unless it is already there.

        Returns:
            True if Alloy was copied to the device, False if it was present
        """
        output = await self._run(
            f"test -f {ALLOY_BINARY_PATH} && echo present || echo absent"
        )
        if output.strip() == "present":
            logger.debug("Alloy already installed on VM, verifying version")
            version = await self._alloy_version()
            if version:
                logger.debug(f"Alloy version: {version}")
            return False

        cached = await self.cache.get_or_fetch(self.alloy_version)

        logger.debug("Copying alloy binary to VM")
        run = self._run
        await self._run_steps("Alloy install", [
            fatal("copy alloy to VM", lambda: self.channel.transfer(cached, ALLOY_UPLOAD_PATH)),
            fatal(
                "install alloy on VM",
                lambda: run(
                    f"sudo mv {ALLOY_UPLOAD_PATH} {ALLOY_BINARY_PATH} "
                    f"&& sudo chmod +x {ALLOY_BINARY_PATH}"
                ),
            ),
        ])

        version = await self._alloy_version()
        if version:
            logger.info(f"Alloy installed successfully on VM: {version}")
        return True
