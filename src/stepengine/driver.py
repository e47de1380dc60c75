"""
A local stand-in for the scheduler: ticks one step instance until it reaches a terminal
status, sleeping a fixed interval in between
"""

import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable

from stepengine.low.core import StepContext, StepResult
from stepengine.steps.api import CancellationToken, Step
from stepengine.steps.contract import RESULT_SCOPE, state_key
from stepengine.steps.telemetry import TelemetryContext

logger = logging.getLogger(__name__)


def tick_once(
    step: Step, context: StepContext, parameters: dict[str, Any], cancellation: CancellationToken, tick: int = 0
) -> StepResult:
    telemetry = TelemetryContext(
        f"{type(step).__name__}.execute",
        {"experimentId": context.experiment_id, "experimentStepId": context.step_id, "tick": tick},
    )
    return step.execute(context, parameters, telemetry, cancellation)


def poll_until_terminal(
    step: Step,
    context: StepContext,
    parameters: dict[str, Any],
    interval: timedelta = timedelta(seconds=5),
    cancellation: CancellationToken | None = None,
    max_ticks: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StepResult:
    """Returns the terminal result, or the last one if `max_ticks` ran out first"""
    if cancellation is None:
        cancellation = threading.Event()
    tick = 0
    while True:
        result = tick_once(step, context, parameters, cancellation, tick)
        logger.debug(f"tick {tick} of {context.experiment_id}/{context.step_id}: {result.status.value}")
        if result.is_terminal:
            step.store.delete_state(state_key(context).sibling(RESULT_SCOPE))
            return result
        tick += 1
        if max_ticks is not None and tick >= max_ticks:
            logger.warning(f"giving up after {tick} ticks in {result.status.value}")
            return result
        sleep(interval.total_seconds())
