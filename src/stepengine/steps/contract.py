"""
The shared tick boundary: cancellation check at entry, parameter validation, dependency
configuration, exception translation and result bookkeeping. Steps implement only the
work of a single tick, and no exception ever escapes `execute`
"""

import functools
from datetime import timedelta
import logging
from typing import Any, Callable

from stepengine.low.core import (
    ErrorKind,
    StepContext,
    StepEngineError,
    StepError,
    StepResult,
)
from stepengine.platform.filesystem import FileSystem, LocalFileSystem
from stepengine.platform.secrets import EnvironmentSecretResolver, SecretResolver, obscure_secrets
from stepengine.state.store import StateKey
from stepengine.steps.api import CancellationToken, Services, Step
from stepengine.steps.params import StepParameters, SupportedParameter
from stepengine.steps.telemetry import TelemetryContext

logger = logging.getLogger(__name__)

RESULT_SCOPE = "result"

# every step understands these, on top of its own
common_parameters = [
    SupportedParameter("Timeout", type=timedelta, required=False),
]

TickWork = Callable[[Any, StepContext, StepParameters, TelemetryContext, CancellationToken], StepResult]


def state_key(context: StepContext) -> StateKey:
    return StateKey(context.experiment_id, context.step_id)


def configure_default_services(services: Services) -> None:
    services.register_if_absent(FileSystem, LocalFileSystem)
    services.register_if_absent(SecretResolver, EnvironmentSecretResolver)


def _failure_of(e: Exception) -> StepResult:
    if isinstance(e, StepEngineError):
        return StepResult.failed(e.to_error())
    return StepResult.failed(
        StepError(
            kind=ErrorKind.unexpected,
            message=obscure_secrets(str(e) or repr(e)),
            exception_type=type(e).__name__,
        )
    )


def tick_boundary(work: TickWork) -> Callable[[Step, StepContext, dict[str, Any], TelemetryContext, CancellationToken], StepResult]:
    """Turns the work of one tick into the `Step.execute` contract"""

    @functools.wraps(work)
    def execute(
        step: Step,
        context: StepContext,
        parameters: dict[str, Any],
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> StepResult:
        key = state_key(context)
        result_key = key.sibling(RESULT_SCOPE)
        if cancellation.is_set():
            try:
                prior = step.store.get_state(result_key, StepResult)
            except Exception:
                logger.exception(f"failed to read the prior result of {key}")
                prior = None
            logger.info(f"{key} cancelled before tick, returning prior result {prior}")
            return prior if prior is not None else StepResult.cancelled()

        step_parameters = StepParameters(parameters, [*common_parameters, *step.supported_parameters])
        try:
            step_parameters.validate()
            step.validate_parameters(context, step_parameters)
            step.configure_dependencies(context, step_parameters)
            result = work(step, context, step_parameters, telemetry, cancellation)
        except Exception as e:
            logger.exception(f"tick of {key} failed")
            result = _failure_of(e)

        if cancellation.is_set() and not result.is_terminal:
            logger.info(f"{key} cancelled during tick")
            result = StepResult.cancelled()

        telemetry.add("status", result.status.value)
        if result.error is not None:
            telemetry.add("errorKind", result.error.kind.value)
            telemetry.add("error", result.error.message)
        telemetry.emit()

        try:
            step.store.save_state(result_key, result)
            if result.is_terminal:
                logger.debug(f"{key} reached {result.status.value}, discarding state")
                step.store.delete_state(key)
        except Exception:
            logger.exception(f"failed to record the result of {key}")
        return result

    return execute
