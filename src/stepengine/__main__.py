"""
Command line for running a step locally

Example:
```
python -m stepengine run process --parameters='{"Command": "/opt/worker/VirtualClient", "Duration": "00:30:00"}'
python -m stepengine tick resources --experiment_id=e1 --step_id=s1 --parameters='{"Iterations": 2, "VmSize": "Standard_D2s_v3", "Regions": "East US", "UseTipSession": false}'
```
The `resources` step provisions against the in-process simulator
"""

import logging.config
import threading
import uuid
from datetime import timedelta
from typing import Any

import fire
import orjson

from stepengine.clients.simulator import SimulatedCloud
from stepengine.config import logging_config
from stepengine.driver import poll_until_terminal, tick_once
from stepengine.low.core import StepContext, StepResult
from stepengine.platform.process import PsutilProcessPlatform
from stepengine.state.store import FileStateStore
from stepengine.steps.api import Step
from stepengine.workloads.process_lifecycle import ProcessLifecycleController
from stepengine.workloads.resource_iteration import ResourceIterationController


def _as_dict(value: str | dict | None) -> dict[str, Any]:
    # NOTE fire already parses json-looking args into dicts, but not when quoted oddly
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return orjson.loads(value)


def _build_step(step: str, state_root: str, settle_after: int) -> Step:
    store = FileStateStore(state_root)
    if step == "process":
        return ProcessLifecycleController(store, PsutilProcessPlatform())
    elif step == "resources":
        cloud = SimulatedCloud(settle_after=settle_after)
        return ResourceIterationController(store, cloud, sessions=cloud)
    else:
        raise ValueError(f"unknown step {step}, expected process or resources")


def _print(result: StepResult) -> None:
    print(orjson.dumps(result.model_dump(mode="json")).decode("utf-8"))


def run(
    step: str,
    parameters: str | dict | None = None,
    context: str | dict | None = None,
    experiment_id: str | None = None,
    step_id: str | None = None,
    state_root: str = ".stepengine",
    interval_sec: float = 5.0,
    max_ticks: int | None = None,
    settle_after: int = 1,
) -> None:
    """Ticks the step until it is terminal"""
    logging.config.dictConfig(logging_config)
    step_context = StepContext(
        **{
            "experiment_id": experiment_id or str(uuid.uuid4()),
            "step_id": step_id or str(uuid.uuid4()),
            **_as_dict(context),
        }
    )
    result = poll_until_terminal(
        _build_step(step, state_root, settle_after),
        step_context,
        _as_dict(parameters),
        interval=timedelta(seconds=interval_sec),
        max_ticks=max_ticks,
    )
    _print(result)


def tick(
    step: str,
    experiment_id: str,
    step_id: str,
    parameters: str | dict | None = None,
    context: str | dict | None = None,
    state_root: str = ".stepengine",
    settle_after: int = 1,
) -> None:
    """Executes exactly one tick, the way an external scheduler would"""
    logging.config.dictConfig(logging_config)
    step_context = StepContext(
        **{"experiment_id": experiment_id, "step_id": step_id, **_as_dict(context)}
    )
    result = tick_once(
        _build_step(step, state_root, settle_after),
        step_context,
        _as_dict(parameters),
        threading.Event(),
    )
    _print(result)


if __name__ == "__main__":
    fire.Fire({"run": run, "tick": tick})
