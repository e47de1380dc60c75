"""
The contract between a step and the scheduler ticking it. Every concrete step implements
`Step`, and wraps its `execute` with `stepengine.steps.contract.tick_boundary`
"""

import logging
import threading
from typing import Any, Callable, ClassVar, Protocol, Type, TypeVar, runtime_checkable

from stepengine.low.core import StepContext, StepResult
from stepengine.state.store import StateStore
from stepengine.steps.params import StepParameters, SupportedParameter
from stepengine.steps.telemetry import TelemetryContext

logger = logging.getLogger(__name__)

S = TypeVar("S")

CancellationToken = threading.Event


class Services:
    """Process-external singletons a step depends on, keyed by their protocol"""

    def __init__(self) -> None:
        self._services: dict[type, Any] = {}

    def register(self, key: Type[S], service: S) -> None:
        self._services[key] = service

    def register_if_absent(self, key: Type[S], factory: Callable[[], S]) -> None:
        if key not in self._services:
            logger.debug(f"registering default {key.__name__}")
            self._services[key] = factory()

    def get(self, key: Type[S]) -> S:
        if key not in self._services:
            raise KeyError(f"no service registered for {key.__name__}")
        return self._services[key]

    def __contains__(self, key: type) -> bool:
        return key in self._services


@runtime_checkable
class Step(Protocol):
    supported_parameters: ClassVar[list[SupportedParameter]]
    store: StateStore
    services: Services

    def validate_parameters(self, context: StepContext, parameters: StepParameters) -> None:
        """Raises ConfigurationError on anything the parameter schema alone cannot express"""
        raise NotImplementedError

    def configure_dependencies(self, context: StepContext, parameters: StepParameters) -> None:
        """Called before every tick's work, must tolerate repeated calls"""
        raise NotImplementedError

    def execute(
        self,
        context: StepContext,
        parameters: dict[str, Any],
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> StepResult:
        raise NotImplementedError
