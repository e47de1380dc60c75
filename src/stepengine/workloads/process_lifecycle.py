"""
Runs a long-lived worker process on the node for a fixed duration, across many ticks.

Each tick does one of, in priority order:
 - verify the worker package is installed, giving up after `dependency_install_timeout`,
 - start the worker, remembering its pid/name and the time it is due to stop,
 - check the worker is still the process we started. If it is gone, it either crashed,
   the host rebooted, or *we* were restarted while it kept running. A crash or reboot
   restarts it within a bounded budget, our own restart adopts the survivor,
 - stop the worker once its duration has elapsed, and succeed.

The only in-memory state is `_handles`, a cache of live process handles which is never
trusted without re-checking against the OS
"""

import hashlib
import logging
import os
import re
import shlex
import subprocess
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, ClassVar

import psutil
from pydantic import BaseModel

from stepengine.config import environment_name
from stepengine.low.core import (
    ConfigurationError,
    DependencyNotFoundError,
    ErrorKind,
    MaximumFailuresReachedError,
    StepContext,
    StepEngineError,
    StepResult,
    StepTimeoutError,
)
from stepengine.low.func import maybe_head, retry_linear, utcnow
from stepengine.platform.filesystem import FileSystem
from stepengine.platform.process import ProcessHandle, ProcessPlatform
from stepengine.platform.secrets import SecretResolver, obscure_secrets
from stepengine.state.store import StateKey, StateStore
from stepengine.steps.api import CancellationToken, Services
from stepengine.steps.contract import configure_default_services, state_key, tick_boundary
from stepengine.steps.params import StepParameters, SupportedParameter
from stepengine.steps.telemetry import TelemetryContext
from stepengine.workloads.specification import SPECIFICATION_FILE, write_specification_file

logger = logging.getLogger(__name__)

default_timeout = timedelta(minutes=20)
dependency_install_timeout = timedelta(minutes=20)
default_max_restarts = 50
reevaluation_extension = timedelta(minutes=5)
default_package_pattern = "HostWorkloads.*"
default_executable_name = "VirtualClient*"
kill_retries = 1
kill_retry_delay = timedelta(milliseconds=100)

# order matters, it is the order on the command line
secret_parameters = [
    ("ApplicationInsightsInstrumentationKey", "--applicationInsightsInstrumentationKey"),
    ("EventHubConnectionString", "--eventHubConnectionString"),
]


class ProcessLifecycleState(BaseModel):
    step_timeout: datetime
    dependencies_installed: bool = False
    dependencies_install_end_time: datetime | None = None
    process_running: bool = False
    process_id: int | None = None
    process_name: str | None = None
    process_end_time: datetime | None = None
    restart_count: int = 0

    def is_duration_expired(self, now: datetime) -> bool:
        return self.process_end_time is not None and now >= self.process_end_time


def seed_of(experiment_id: str) -> int:
    """Signed 32 bit seed, stable for an experiment id"""
    try:
        canonical = str(uuid.UUID(experiment_id))
    except ValueError:
        canonical = experiment_id
    h = hashlib.new("md5", usedforsecurity=False)
    h.update(canonical.encode("utf-8"))
    return int.from_bytes(h.digest()[:4], "little", signed=True)


def metadata_of(context: StepContext) -> dict[str, str]:
    agent = context.agent
    metadata = {
        "agentId": str(agent) if agent is not None else "",
        "tipSessionId": (agent.context if agent is not None else None) or "",
        "nodeId": agent.node_name if agent is not None else "",
        "nodeName": agent.node_name if agent is not None else "",
        "experimentId": context.experiment_id,
        "experimentStepId": context.step_id,
        "experimentGroup": context.group or "",
        "groupId": context.group or "",
        "virtualMachineName": (agent.virtual_machine_name if agent is not None else None) or "",
        "agentType": "GuestAgent" if agent is not None and agent.virtual_machine_name else "HostAgent",
        "clusterName": agent.cluster_name if agent is not None else "",
        "environment": environment_name(),
    }
    metadata.update({k: str(v) for k, v in context.metadata.items()})
    return metadata


def ensure_unique_flag(args: list[str], flag: str) -> None:
    occurrences = re.findall(re.escape(flag), " ".join(args), re.IGNORECASE)
    if len(occurrences) > 1:
        raise StepEngineError(
            f"invalid command line usage, duplicate command line parameter {flag}",
            ErrorKind.invalid_usage,
        )


class ProcessLifecycleController:
    supported_parameters: ClassVar[list[SupportedParameter]] = [
        SupportedParameter("Duration", timedelta, required=True),
        SupportedParameter("InstallRoot", str),
        SupportedParameter("Command", str),
        SupportedParameter("PackagePattern", str),
        SupportedParameter("ExecutableName", str),
        SupportedParameter("CommandArguments", str),
        SupportedParameter("Timeout", timedelta),
        SupportedParameter("MaxRestarts", int),
        SupportedParameter("IncludeSpecifications", bool),
        SupportedParameter("EventHubConnectionString", str),
        SupportedParameter("ApplicationInsightsInstrumentationKey", str),
    ]

    def __init__(
        self,
        store: StateStore,
        platform: ProcessPlatform,
        services: Services | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.platform = platform
        self.services = services if services is not None else Services()
        self.clock = clock
        self.sleep = sleep
        self._handles: dict[StateKey, ProcessHandle] = {}

    def validate_parameters(self, context: StepContext, parameters: StepParameters) -> None:
        if "Command" not in parameters and "InstallRoot" not in parameters:
            raise ConfigurationError("one of the parameters Command or InstallRoot is required")
        if parameters.get("MaxRestarts", default_max_restarts) < 1:
            raise ConfigurationError("parameter MaxRestarts must be positive")
        if parameters.get("Duration") <= timedelta(0):
            raise ConfigurationError("parameter Duration must be positive")

    def configure_dependencies(self, context: StepContext, parameters: StepParameters) -> None:
        configure_default_services(self.services)

    @tick_boundary
    def execute(
        self,
        context: StepContext,
        parameters: StepParameters,
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> StepResult:
        key = state_key(context)
        now = self.clock()
        state = self.store.get_state(key, ProcessLifecycleState)
        if state is None:
            state = ProcessLifecycleState(step_timeout=now + parameters.get("Timeout", default_timeout))
            logger.debug(f"{key} first tick, step timeout at {state.step_timeout}")
        try:
            result = self._tick(key, context, parameters, state, telemetry, cancellation)
        finally:
            self.store.save_state(key, state)
        if result.is_terminal:
            self._handles.pop(key, None)
        return result

    def _tick(
        self,
        key: StateKey,
        context: StepContext,
        parameters: StepParameters,
        state: ProcessLifecycleState,
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> StepResult:
        now = self.clock()
        keep_ticking = StepResult.in_progress_continue(reevaluation_extension)

        if not state.dependencies_installed:
            self._verify_dependencies(parameters, state, telemetry, now)
            self._check_step_timeout(state, now)
            return keep_ticking

        if not state.process_running:
            if state.is_duration_expired(now):
                # restarted at least once before, and ran out of time while down
                telemetry.add("processDurationExpired", True)
                return StepResult.succeeded()
            if state.process_end_time is None:
                self._check_step_timeout(state, now)
            if cancellation.is_set():
                return keep_ticking
            self._start(key, context, parameters, state, telemetry, cancellation)
            return keep_ticking

        handle = self._handles.get(key)
        scenario: str
        if handle is not None:
            if not self.platform.has_exited(handle):
                return self._monitor(key, handle, state, telemetry, now)
            logger.warning(f"{key} process {handle.pid} exited with {self.platform.exit_code(handle)}")
            self._handles.pop(key)
            scenario = "processExited"
        else:
            if (adopted := self._reacquire(state)) is not None:
                logger.info(f"{key} re-adopted surviving process {adopted.pid}")
                telemetry.add("processScenario", "agentRestart")
                state.process_id = adopted.pid
                state.process_name = adopted.name
                self._handles[key] = adopted
                return self._monitor(key, adopted, state, telemetry, now)
            scenario = "processNotRunning"

        # crash or reboot
        if state.is_duration_expired(now):
            telemetry.add("processEndTime", state.process_end_time)
            telemetry.add("processDurationExpired", True)
            return StepResult.succeeded()
        state.restart_count += 1
        max_restarts = parameters.get("MaxRestarts", default_max_restarts)
        if state.restart_count >= max_restarts:
            raise MaximumFailuresReachedError(
                f"process restarted too many times: {state.restart_count} of at most {max_restarts}"
            )
        telemetry.add("processRestarted", True)
        telemetry.add("processScenario", scenario)
        logger.info(f"{key} restarting process after {scenario}, restart {state.restart_count}")
        state.process_running = False
        if cancellation.is_set():
            return keep_ticking
        self._start(key, context, parameters, state, telemetry, cancellation)
        return keep_ticking

    def _monitor(
        self, key: StateKey, handle: ProcessHandle, state: ProcessLifecycleState, telemetry: TelemetryContext, now: datetime
    ) -> StepResult:
        if state.is_duration_expired(now):
            telemetry.add("processEndTime", state.process_end_time)
            telemetry.add("processDurationExpired", True)
            self._stop(handle)
            return StepResult.succeeded()
        telemetry.add("processRunning", True)
        return StepResult.in_progress_continue(reevaluation_extension)

    def _reacquire(self, state: ProcessLifecycleState) -> ProcessHandle | None:
        """Finds the worker after we lost our handle, by pid first and by name second"""
        if state.process_id is not None:
            found = self.platform.try_find_by_pid(state.process_id)
            if found is not None and found.name == state.process_name:
                return found
        if state.process_name is not None:
            return self.platform.try_find_by_name(state.process_name)
        return None

    def _stop(self, handle: ProcessHandle) -> None:
        try:
            retry_linear(
                lambda: self.platform.kill(handle),
                retries=kill_retries,
                delay=kill_retry_delay,
                retry_on=(psutil.AccessDenied, PermissionError, OSError),
                sleep=self.sleep,
            )
            logger.info(f"stopped process {handle.pid}")
        except (psutil.Error, OSError, subprocess.SubprocessError) as e:
            # the step is done either way, a stray worker exits on its own `--timeout`
            logger.warning(f"failed to stop process {handle.pid}: {repr(e)}")

    def _check_step_timeout(self, state: ProcessLifecycleState, now: datetime) -> None:
        if now > state.step_timeout:
            raise StepTimeoutError(
                f"timeout expired, the worker process could not be started by {state.step_timeout.isoformat()}"
            )

    ## dependencies & command line

    def _executable(self, parameters: StepParameters) -> str | None:
        fs = self.services.get(FileSystem)
        if (command := parameters.get("Command")) is not None:
            return command if fs.exists(command) else None
        packages = fs.glob(os.path.join(parameters.get("InstallRoot"), parameters.get("PackagePattern", default_package_pattern)))
        executable_name = parameters.get("ExecutableName", default_executable_name)
        return maybe_head(
            executable
            for package in packages
            for executable in fs.glob(os.path.join(package, "**", executable_name))
        )

    def _verify_dependencies(
        self, parameters: StepParameters, state: ProcessLifecycleState, telemetry: TelemetryContext, now: datetime
    ) -> None:
        if state.dependencies_install_end_time is None:
            state.dependencies_install_end_time = now + dependency_install_timeout
        if self._executable(parameters) is None:
            telemetry.add("isDependencyPackageFound", False)
            if now > state.dependencies_install_end_time:
                raise DependencyNotFoundError("the worker package was not found on the node")
            logger.debug(f"worker package not found yet, waiting until {state.dependencies_install_end_time}")
        else:
            telemetry.add("isDependencyPackageFound", True)
            state.dependencies_installed = True

    def command_line(
        self, context: StepContext, parameters: StepParameters, cancellation: CancellationToken
    ) -> tuple[str, list[str]]:
        executable = self._executable(parameters)
        if executable is None:
            raise DependencyNotFoundError("the worker executable disappeared after installation")
        duration: timedelta = parameters.get("Duration")
        metadata = ",,,".join(f"{k}={v}" for k, v in metadata_of(context).items())
        args = shlex.split(parameters.get("CommandArguments", ""))
        args += [
            f"--timeout={int(duration.total_seconds() // 60)}",
            "--multipleInstances=true",
            f"--metadata={metadata}",
        ]
        if parameters.get("IncludeSpecifications", True):
            specification_path = os.path.join(os.path.dirname(executable), SPECIFICATION_FILE)
            write_specification_file(context, specification_path, self.services.get(FileSystem), sleep=self.sleep)
            args.append(f"--specificationPath={specification_path}")
        args.append(f"--seed={seed_of(context.experiment_id)}")

        for name, flag in secret_parameters:
            if (value := parameters.get(name)) is None:
                continue
            resolver = self.services.get(SecretResolver)
            if resolver.is_secret_reference(value):
                value = resolver.resolve_secret(value, cancellation)
            args.append(f"{flag}={value}")
            ensure_unique_flag(args, flag)
        return executable, args

    def _start(
        self,
        key: StateKey,
        context: StepContext,
        parameters: StepParameters,
        state: ProcessLifecycleState,
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> None:
        command, args = self.command_line(context, parameters, cancellation)
        logger.info(f"{key} starting {command} {obscure_secrets(' '.join(args))}")
        try:
            handle = self.platform.start(command, args, os.path.dirname(command) or None)
        except OSError as e:
            raise StepEngineError(f"unable to start the worker process: {repr(e)}", ErrorKind.dependency_failure)

        if self.platform.has_exited(handle):
            # occasionally the worker starts up and exits right away, the next tick tries again
            logger.warning(f"{key} process {handle.pid} exited on start with {self.platform.exit_code(handle)}")
            telemetry.add("processExitOnStart", True)
            state.process_running = False
            return

        self._handles[key] = handle
        state.process_running = True
        state.process_id = handle.pid
        state.process_name = handle.name
        if state.process_end_time is None:
            state.process_end_time = self.clock() + parameters.get("Duration")
        telemetry.add("processEndTime", state.process_end_time)
        logger.debug(f"{key} process {handle.pid} running until {state.process_end_time}")
