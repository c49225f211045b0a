"""Status models reported to callers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class AgentState(str, Enum):
    """Installation state of the agent, probed from the device on every call."""
    NOT_INSTALLED = "not_installed"
    INSTALLED_STOPPED = "installed_stopped"
    INSTALLED_RUNNING = "installed_running"


class AgentStatus(BaseModel):
    """Agent state plus the process line when it is running."""

    model_config = ConfigDict(frozen=True)

    state: AgentState
    process: str | None = None

    @property
    def installed(self) -> bool:
        return self.state != AgentState.NOT_INSTALLED

    def describe(self) -> str:
        """Human-readable status line."""
        if self.state == AgentState.NOT_INSTALLED:
            return "not installed"
        if self.state == AgentState.INSTALLED_STOPPED:
            return "installed, not running"
        if self.process is None:
            return "installed, running (details unavailable)"
        if not self.process:
            return "installed, running"
        return f"installed, running\n{self.process}"
