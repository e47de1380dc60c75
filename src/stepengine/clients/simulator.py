"""
In-process stand-in for the provisioning and reserved-session services. Deployments and
deletions settle after a configurable number of polls, into scripted outcomes
"""

import logging
import threading
from collections import deque
from typing import Iterable

from stepengine.clients.api import (
    CleanupState,
    ProvisioningState,
    ReservedSession,
    ResourceGroupSpec,
)
from stepengine.low.func import pyd_replace

logger = logging.getLogger(__name__)

DeployOutcome = ProvisioningState | Exception
DeleteOutcome = CleanupState | Exception


class SimulatedCloud:
    def __init__(
        self,
        settle_after: int = 1,
        deploy_outcomes: Iterable[DeployOutcome] = (),
        delete_outcomes: Iterable[DeleteOutcome] = (),
        sessions: Iterable[ReservedSession] = (),
    ) -> None:
        """
        settle_after: the poll (1-based) on which an operation reports its final state
        deploy_outcomes, delete_outcomes: consumed one per resource group, default is success.
          An exception outcome is raised on every poll of that resource group
        """
        if settle_after < 1:
            raise ValueError(f"{settle_after=} must be positive")
        self.settle_after = settle_after
        self.deploy_outcomes: deque[DeployOutcome] = deque(deploy_outcomes)
        self.delete_outcomes: deque[DeleteOutcome] = deque(delete_outcomes)
        self.sessions = {session.id: session for session in sessions}
        self.deploy_polls: dict[str, int] = {}
        self.delete_polls: dict[str, int] = {}
        self._deploy_outcome: dict[str, DeployOutcome] = {}
        self._delete_outcome: dict[str, DeleteOutcome] = {}
        self.live: set[str] = set()

    def deploy_resource_group(self, spec: ResourceGroupSpec, cancellation: threading.Event) -> ResourceGroupSpec:
        if spec.name not in self._deploy_outcome:
            self._deploy_outcome[spec.name] = self.deploy_outcomes.popleft() if self.deploy_outcomes else ProvisioningState.succeeded
            self.deploy_polls[spec.name] = 0
            self.live.add(spec.name)
        outcome = self._deploy_outcome[spec.name]
        if isinstance(outcome, Exception):
            raise outcome
        if spec.provisioning_state in (ProvisioningState.succeeded, ProvisioningState.failed):
            return spec
        self.deploy_polls[spec.name] += 1
        state = outcome if self.deploy_polls[spec.name] >= self.settle_after else ProvisioningState.running
        logger.debug(f"deployment of {spec.name} at poll {self.deploy_polls[spec.name]}: {state.value}")
        error = "simulated deployment failure" if state == ProvisioningState.failed else None
        vms = [pyd_replace(vm, provisioning_state=state, error=error) for vm in spec.vms]
        return pyd_replace(spec, provisioning_state=state, vms=vms, error=error)

    def delete_resource_group(self, spec: ResourceGroupSpec, cancellation: threading.Event) -> ResourceGroupSpec:
        if spec.name not in self._delete_outcome:
            self._delete_outcome[spec.name] = self.delete_outcomes.popleft() if self.delete_outcomes else CleanupState.succeeded
            self.delete_polls[spec.name] = 0
        outcome = self._delete_outcome[spec.name]
        if isinstance(outcome, Exception):
            raise outcome
        if spec.cleanup_state in (CleanupState.succeeded, CleanupState.failed):
            return spec
        self.delete_polls[spec.name] += 1
        polls = self.delete_polls[spec.name]
        if polls >= self.settle_after:
            state = outcome
        elif polls == 1:
            state = CleanupState.accepted
        else:
            state = CleanupState.deleting
        if state == CleanupState.succeeded:
            self.live.discard(spec.name)
        logger.debug(f"deletion of {spec.name} at poll {polls}: {state.value}")
        error = "simulated deletion failure" if state == CleanupState.failed else None
        return pyd_replace(spec, cleanup_state=state, error=error)

    def get_session(self, session_id: str) -> ReservedSession | None:
        return self.sessions.get(session_id)
