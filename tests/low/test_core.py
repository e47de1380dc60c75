"""
Tests the StepResult invariants and the error model
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from stepengine.low.core import (
    AgentIdentification,
    ConfigurationError,
    EntityType,
    EnvironmentEntity,
    ErrorKind,
    ExecutionStatus,
    StepContext,
    StepEngineError,
    StepError,
    StepResult,
)


def test_terminal_statuses():
    terminal = {s for s in ExecutionStatus if s.is_terminal}
    assert terminal == {
        ExecutionStatus.succeeded,
        ExecutionStatus.failed,
        ExecutionStatus.cancelled,
        ExecutionStatus.system_cancelled,
    }


def test_error_only_when_failed():
    error = StepError(kind=ErrorKind.timeout, message="late")
    with pytest.raises(ValidationError):
        StepResult(status=ExecutionStatus.in_progress, error=error)
    with pytest.raises(ValidationError):
        StepResult(status=ExecutionStatus.in_progress_continue, error=error)
    with pytest.raises(ValidationError):
        StepResult(status=ExecutionStatus.failed)

    assert StepResult.failed(error).error == error
    assert StepResult.in_progress_continue(timedelta(minutes=5)).extension_timeout == timedelta(minutes=5)
    assert StepResult.succeeded().is_terminal
    assert not StepResult.in_progress().is_terminal


def test_exception_kinds():
    e = ConfigurationError("missing Duration")
    assert e.to_error() == StepError(
        kind=ErrorKind.configuration, message="missing Duration", exception_type="ConfigurationError"
    )
    assert StepEngineError("boom").kind == ErrorKind.unexpected
    assert StepEngineError("dup", ErrorKind.invalid_usage).to_error().kind == ErrorKind.invalid_usage


def test_context():
    agent = AgentIdentification(cluster_name="c0", node_name="n0", virtual_machine_name="vm0", context="tip0")
    assert str(agent) == "c0,n0,vm0,tip0"
    assert str(AgentIdentification(cluster_name="c0", node_name="n0")) == "c0,n0"

    context = StepContext(
        experiment_id="e",
        step_id="s",
        group="Group A",
        entities=[
            EnvironmentEntity(entity_type=EntityType.tip_session, id="t1", group="Group A"),
            EnvironmentEntity(entity_type=EntityType.tip_session, id="t2", group="Group B"),
            EnvironmentEntity(entity_type=EntityType.virtual_machine, id="vm", group="Group A"),
        ],
    )
    assert [e.id for e in context.entities_of(EntityType.tip_session, "Group A")] == ["t1"]
    assert [e.id for e in context.entities_of(EntityType.tip_session)] == ["t1", "t2"]
