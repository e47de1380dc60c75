"""
Core value types -- prescribes the contract between a step and whoever ticks it
"""

from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator
from typing_extensions import Self

## Results


class ExecutionStatus(str, Enum):
    in_progress = "InProgress"
    in_progress_continue = "InProgressContinue"
    succeeded = "Succeeded"
    failed = "Failed"
    cancelled = "Cancelled"
    system_cancelled = "SystemCancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.in_progress, ExecutionStatus.in_progress_continue)


class ErrorKind(str, Enum):
    configuration = "configuration"
    timeout = "timeout"
    dependency_not_found = "dependency_not_found"
    dependency_failure = "dependency_failure"
    maximum_failures_reached = "maximum_failures_reached"
    entity_not_found = "entity_not_found"
    invalid_usage = "invalid_usage"
    unexpected = "unexpected"


class StepError(BaseModel):
    kind: ErrorKind
    message: str
    exception_type: str | None = Field(
        None, description="class name of the exception the error originated from, if any"
    )


class StepResult(BaseModel):
    status: ExecutionStatus
    extension_timeout: timedelta | None = Field(
        None,
        description="asks the scheduler to extend the step deadline before the next tick",
    )
    error: StepError | None = None

    @model_validator(mode="after")
    def error_only_when_failed(self) -> Self:
        if not self.status.is_terminal and self.error is not None:
            raise ValueError(f"non-terminal status {self.status.value} must not carry an error")
        if self.status == ExecutionStatus.failed and self.error is None:
            raise ValueError("failed status must carry an error")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def in_progress(cls, extension_timeout: timedelta | None = None) -> Self:
        return cls(status=ExecutionStatus.in_progress, extension_timeout=extension_timeout)

    @classmethod
    def in_progress_continue(cls, extension_timeout: timedelta | None = None) -> Self:
        return cls(status=ExecutionStatus.in_progress_continue, extension_timeout=extension_timeout)

    @classmethod
    def succeeded(cls) -> Self:
        return cls(status=ExecutionStatus.succeeded)

    @classmethod
    def cancelled(cls) -> Self:
        return cls(status=ExecutionStatus.cancelled)

    @classmethod
    def failed(cls, error: StepError) -> Self:
        return cls(status=ExecutionStatus.failed, error=error)


## Errors

# NOTE the kind is what the scheduler alerts on, the class is for `except` clauses within the engine


class StepEngineError(Exception):
    kind: ErrorKind = ErrorKind.unexpected

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_error(self) -> StepError:
        return StepError(kind=self.kind, message=self.message, exception_type=type(self).__name__)


class ConfigurationError(StepEngineError):
    kind = ErrorKind.configuration


class StepTimeoutError(StepEngineError):
    kind = ErrorKind.timeout


class DependencyNotFoundError(StepEngineError):
    kind = ErrorKind.dependency_not_found


class MaximumFailuresReachedError(StepEngineError):
    kind = ErrorKind.maximum_failures_reached


class EntityNotFoundError(StepEngineError):
    kind = ErrorKind.entity_not_found


## Context


class EntityType(str, Enum):
    tip_session = "TipSession"
    virtual_machine = "VirtualMachine"


class EnvironmentEntity(BaseModel):
    """Something provisioned for the experiment by an earlier step, eg a reserved node or a VM"""

    entity_type: EntityType
    id: str
    group: str | None = None
    agent_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentIdentification(BaseModel):
    """Where a step executes. Rendered as `cluster,node[,vm[,context]]`, the form agents register with"""

    cluster_name: str
    node_name: str
    virtual_machine_name: str | None = None
    context: str | None = Field(None, description="the reserved session the node belongs to")

    def __str__(self) -> str:
        parts = [self.cluster_name, self.node_name]
        if self.virtual_machine_name is not None or self.context is not None:
            parts.append(self.virtual_machine_name or "")
        if self.context is not None:
            parts.append(self.context)
        return ",".join(parts)


class StepContext(BaseModel):
    experiment_id: str
    step_id: str
    group: str | None = None
    agent: AgentIdentification | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    entities: list[EnvironmentEntity] = Field(default_factory=list)

    def entities_of(self, entity_type: EntityType, group: str | None = None) -> list[EnvironmentEntity]:
        return [
            entity
            for entity in self.entities
            if entity.entity_type == entity_type and (group is None or entity.group == group)
        ]
