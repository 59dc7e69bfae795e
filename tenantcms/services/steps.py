"""Ordered side-effecting steps with compensating actions.

A pipeline is a list of ``Step`` objects. ``run_steps`` executes them in
order; when one fails (or times out) the compensations of every step that was
applied so far run in reverse order, and the original failure is raised as
``ProvisioningStepFailed``. Compensations are best-effort: a failing one is
logged and recorded, and the remaining ones still run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tenantcms.core.exceptions import CleanupFailed, ProvisioningStepFailed

logger = logging.getLogger(__name__)


class StepOutcome(StrEnum):
    APPLIED = "applied"
    SKIPPED = "skipped"  # nothing changed, so nothing to compensate


Action = Callable[[Any], Awaitable["StepOutcome | None"]]
Compensation = Callable[[Any], Awaitable[None]]


@dataclass
class Step:
    name: str
    action: Action
    compensate: Compensation | None = None
    timeout: float | None = None
    enabled: bool = True


@dataclass
class StepReport:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


async def run_steps(steps: Sequence[Step], ctx: Any) -> StepReport:
    """Run steps in order, rolling back applied steps on the first failure."""
    report = StepReport()
    applied: list[Step] = []

    for step in steps:
        if not step.enabled:
            logger.info("Step %s disabled, skipping", step.name)
            report.skipped.append(step.name)
            continue

        logger.info("Step %s started", step.name)
        try:
            outcome = await _bounded(step.action(ctx), step.timeout)
        except asyncio.CancelledError:
            logger.warning("Step %s cancelled, rolling back", step.name)
            await run_compensations(applied, ctx)
            raise
        except Exception as exc:
            logger.error("Step %s failed: %r", step.name, exc)
            failures = await run_compensations(applied, ctx)
            raise ProvisioningStepFailed(step.name, exc, cleanup_failures=failures) from exc

        if outcome == StepOutcome.SKIPPED:
            logger.info("Step %s had nothing to do", step.name)
            report.skipped.append(step.name)
        else:
            logger.info("Step %s completed", step.name)
            report.applied.append(step.name)
            applied.append(step)

    return report


async def run_compensations(steps: Sequence[Step], ctx: Any) -> list[CleanupFailed]:
    """Run each step's compensation in reverse order. Never raises."""
    failures: list[CleanupFailed] = []
    for step in reversed(steps):
        if step.compensate is None:
            continue
        try:
            await _bounded(step.compensate(ctx), step.timeout)
        except Exception as exc:
            failure = CleanupFailed(step.name, exc)
            logger.warning("Cleanup of step %s failed: %r", step.name, exc)
            failures.append(failure)
        else:
            logger.info("Cleanup of step %s done", step.name)
    return failures


async def _bounded(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)
