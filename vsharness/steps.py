"""Ordered lifecycle steps with fatal or best-effort failure policy.

Install and uninstall are lists of steps. A best-effort step that fails
is logged and skipped over; a fatal step that fails stops the list and
raises StepError. Nothing is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from vsharness.errors import StepError

logger = logging.getLogger(__name__)


class StepPolicy(str, Enum):
    """What a step failure means for the enclosing operation."""
    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


@dataclass
class Step:
    """One named action of a lifecycle operation."""
    name: str
    action: Callable[[], Awaitable[Any]]
    policy: StepPolicy = StepPolicy.FATAL


@dataclass
class StepOutcome:
    """Result of running one step."""
    name: str
    ok: bool
    warning: str | None = None


def fatal(name: str, action: Callable[[], Awaitable[Any]]) -> Step:
    return Step(name, action, StepPolicy.FATAL)


def best_effort(name: str, action: Callable[[], Awaitable[Any]]) -> Step:
    return Step(name, action, StepPolicy.BEST_EFFORT)


async def run_steps(component: str, steps: list[Step]) -> list[StepOutcome]:
    """Run steps in order.

    Args:
        component: Name of the acting component, used in log messages
        steps: Steps to run

    Returns:
        One StepOutcome per step that ran

    Raises:
        StepError: On the first failing FATAL step
    """
    outcomes: list[StepOutcome] = []
    for step in steps:
        logger.debug(f"{component}: {step.name}")
        try:
            await step.action()
        except Exception as e:
            if step.policy == StepPolicy.BEST_EFFORT:
                logger.warning(f"{component}: {step.name} failed (continuing anyway): {e}")
                outcomes.append(StepOutcome(step.name, ok=False, warning=str(e)))
                continue
            logger.error(f"{component}: {step.name} failed: {e}")
            raise StepError(component, step.name, e) from e
        outcomes.append(StepOutcome(step.name, ok=True))
    return outcomes
