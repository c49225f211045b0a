from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from vsharness import agent_manager as am
from vsharness.config import settings
from vsharness.errors import RemoteCommandError
from vsharness.remote import CommandChannel

FAKE_QEMU = '''#!{python}
"""Stand-in for qemu-system-x86_64 used by the device tests."""
import signal
import sys
import time

mode = "{mode}"
if mode == "stubborn":
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGINT, lambda *_: sys.exit(0))

print("fake qemu starting", " ".join(sys.argv[1:]), flush=True)
print("fake qemu warning", file=sys.stderr, flush=True)

if mode == "crash":
    time.sleep(0.2)
    sys.exit(3)

while True:
    time.sleep(0.05)
'''


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep tests off real paths and fast."""
    monkeypatch.setattr(settings, "alloy_cache_dir", str(tmp_path / "alloy-cache"))
    monkeypatch.setattr(settings, "ssh_key_path", str(tmp_path / "sshkey"))
    monkeypatch.setattr(settings, "ready_poll_interval", 0.01)
    monkeypatch.setattr(settings, "probe_timeout", 0.5)
    yield


@pytest.fixture
def image_dir(tmp_path) -> Path:
    """Work directory with the image files a device needs."""
    work = tmp_path / "images"
    work.mkdir()
    (work / "sonic-vs.qcow2").write_bytes(b"QFI\xfb" + b"\x00" * 60)
    (work / "efi_code.fd").write_bytes(b"\x00" * 64)
    (work / "efi_vars.fd").write_bytes(b"\x00" * 64)
    return work


def write_fake_qemu(directory: Path, mode: str = "run") -> Path:
    script = directory / f"fake-qemu-{mode}"
    script.write_text(FAKE_QEMU.format(python=sys.executable, mode=mode))
    script.chmod(0o755)
    return script


@pytest.fixture
def fake_qemu(tmp_path, monkeypatch):
    """Install a fake hypervisor binary; call with a mode to switch behaviour."""
    def _install(mode: str = "run") -> Path:
        script = write_fake_qemu(tmp_path, mode)
        monkeypatch.setattr(settings, "qemu_binary", str(script))
        return script

    _install()
    return _install


class FakeRemoteHost(CommandChannel):
    """In-memory SONiC host that understands the agent manager's commands."""

    PROBES = ("test -f", "systemctl is-active", "systemctl is-enabled", "ps aux", "echo ready")

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = set()
        self.units: dict[str, str] = {}
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.rc_scripts: set[str] = {"/etc/rc3.d/S99hedgehog-agent"}
        self.commands: list[str] = []
        self.transfers: list[tuple[str, str, int]] = []
        self.fail_on: dict[str, RemoteCommandError] = {}
        self.agent_starts = True
        self.reachable = True

    # --- helpers for tests ---

    def preinstall_agent(self, running: bool = True) -> None:
        self.files[am.AGENT_BINARY_PATH] = b"old-agent"
        self.units[am.AGENT_SERVICE_FILE] = am.AGENT_SERVICE_UNIT
        self.enabled.add(am.AGENT_SERVICE_NAME)
        if running:
            self.active.add(am.AGENT_SERVICE_NAME)

    def fail(self, fragment: str, exit_status: int = 1, output: str = "") -> None:
        self.fail_on[fragment] = RemoteCommandError(
            fragment, f"command exited with code {exit_status}", exit_status, output,
        )

    @property
    def mutations(self) -> list[str]:
        return [c for c in self.commands if not c.startswith(self.PROBES)]

    # --- CommandChannel ---

    async def exec(self, command: str) -> str:
        self.commands.append(command)
        if not self.reachable:
            raise RemoteCommandError(command, "connecting to SSH: connection refused")
        for fragment, error in self.fail_on.items():
            if fragment in command:
                raise error
        return self._interpret(command)

    async def transfer(self, local_path, remote_path: str) -> int:
        data = Path(local_path).read_bytes()
        self.files[remote_path] = data
        self.transfers.append((str(local_path), remote_path, len(data)))
        return len(data)

    def _remove_tree(self, prefix: str) -> None:
        for path in list(self.files):
            if path == prefix or path.startswith(prefix + "/"):
                del self.files[path]
        self.dirs = {d for d in self.dirs if not (d == prefix or d.startswith(prefix + "/"))}

    def _interpret(self, command: str) -> str:
        if command.startswith("sudo tee "):
            path = command.split()[2]
            body = command.split("<<'EOF'\n", 1)[1]
            self.units[path] = body[: -len("EOF")]
            return ""

        words = shlex.split(command.split(" 2>/dev/null")[0].split(" &&")[0])
        if command.startswith("test -f"):
            path = words[2]
            present = path in self.files
            if path == am.ALLOY_BINARY_PATH:
                return "present\n" if present else "absent\n"
            return "installed\n" if present else "not-installed\n"
        if command.startswith("systemctl is-active"):
            return "active\n" if words[2] in self.active else "inactive\n"
        if command.startswith("systemctl is-enabled"):
            return "enabled\n" if words[2] in self.enabled else "disabled\n"
        if command.startswith("ps aux"):
            return "root 42 0.1 0.2 /opt/hedgehog/bin/agent start\n"
        if command == "echo ready":
            return "ready\n"
        if command == f"{am.ALLOY_BINARY_PATH} --version":
            if am.ALLOY_BINARY_PATH not in self.files:
                raise RemoteCommandError(command, "command exited with code 127", 127, "not found")
            return "alloy, version v1.11.2\n"

        if words[:2] == ["sudo", "systemctl"]:
            action, rest = words[2], words[3:]
            service = rest[0] if rest else ""
            if action == "daemon-reload":
                return ""
            if action == "stop":
                self.active.discard(service)
            elif action == "disable":
                self.enabled.discard(service)
            elif action == "enable":
                if f"/etc/systemd/system/{service}.service" not in self.units:
                    raise RemoteCommandError(command, "unit not found", 1, "Failed to enable unit")
                self.enabled.add(service)
            elif action == "start":
                if self.agent_starts or service != am.AGENT_SERVICE_NAME:
                    self.active.add(service)
            elif action == "restart":
                self.active.add(service)
            return ""

        if words[:3] == ["sudo", "rm", "-f"]:
            self.files.pop(words[3], None)
            self.units.pop(words[3], None)
            return ""
        if words[:3] == ["sudo", "rm", "-rf"]:
            self._remove_tree(words[3])
            return ""
        if words[:3] == ["sudo", "mkdir", "-p"]:
            self.dirs.add(words[3])
            return ""
        if words[:2] == ["sudo", "mv"]:
            src, dst = words[2], words[3]
            self.files[dst] = self.files.pop(src)
            return ""
        if words[:2] == ["sudo", "find"]:
            self.rc_scripts.clear()
            return ""

        raise AssertionError(f"FakeRemoteHost does not understand: {command}")


class RecordingCache:
    """DownloadCache double that counts fetches."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.fetches: list[str] = []

    async def get_or_fetch(self, key: str) -> Path:
        path = self.directory / f"alloy-{key}"
        if not path.exists():
            self.fetches.append(key)
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"#!/bin/sh\necho alloy\n")
        return path


@pytest.fixture
def remote() -> FakeRemoteHost:
    return FakeRemoteHost()


@pytest.fixture
def alloy_cache_double(tmp_path) -> RecordingCache:
    return RecordingCache(tmp_path / "cache")


@pytest.fixture
def manager(remote, alloy_cache_double) -> am.AgentManager:
    return am.AgentManager(remote, cache=alloy_cache_double, alloy_version="v1.11.2")


@pytest.fixture
def agent_binary(tmp_path) -> Path:
    binary = tmp_path / "agent"
    binary.write_bytes(b"\x7fELF" + b"agent-build" * 100)
    return binary
