"""Harness configuration."""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Harness settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Hypervisor
    qemu_binary: str = "qemu-system-x86_64"
    image_dir: str = "./images"  # Holds sonic-vs.qcow2 and the EFI images
    vm_name: str = "sonic-vs-test"
    vm_memory: str = "4096M"
    vm_cpus: int = 4  # SONiC containers need >2 CPUs for their CPU limits

    # Host ports forwarded into the guest
    ssh_port: int = 2222
    gnmi_port: int = 8080

    # SSH access to the guest
    ssh_username: str = "admin"
    ssh_key_path: str = "./sshkey"
    ssh_connect_timeout: float = 10.0
    ssh_command_timeout: float = 30.0

    # Boot and shutdown timing (seconds)
    ready_poll_interval: float = 5.0
    ready_timeout: float = 300.0
    probe_timeout: float = 5.0
    stop_timeout: float = 30.0
    cleanup_timeout: float = 30.0

    # Grafana Alloy, downloaded on the host because the guest has no internet
    alloy_version: str = "v1.11.2"
    alloy_url_template: str = (
        "https://github.com/grafana/alloy/releases/download/{version}/alloy-linux-amd64.zip"
    )
    alloy_cache_dir: str = "/tmp"
    download_timeout: float = 120.0

    # Agent under test
    agent_binary: str = "../../../bin/agent"
    fabric_root: str = "../../.."
    build_command: str = "just build-agent"

    class Config:
        env_prefix = "VSHARNESS_"

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value.lower() not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {value!r}")
        return value.lower()


settings = Settings()
