"""
Benchmarks VM provisioning by cycling a resource group through create and delete, until
the requested number of iterations went through successfully.

One tick performs at most one provisioning call:
```
(none) --deploy--> Creating --refresh--> Created | CreationFailed | Creating
Created | CreationFailed --delete--> Deleting --refresh--> Deleted | DeletionFailed | Deleting
Deleted | DeletionFailed --> Succeeded if enough iterations, else a new iteration is deployed
```
Consecutive failures (of either kind) are counted, and once they exceed the configured
maximum the step fails for good
"""

import logging
import random
import re
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, ClassVar

from pydantic import BaseModel, Field

from stepengine.clients.api import (
    CleanupState,
    ProvisioningClient,
    ProvisioningState,
    ReservedSession,
    ResourceGroupSpec,
    SessionClient,
    VmDefinition,
    VmDisk,
)
from stepengine.low.core import (
    ConfigurationError,
    EntityNotFoundError,
    EntityType,
    EnvironmentEntity,
    MaximumFailuresReachedError,
    StepContext,
    StepResult,
    StepTimeoutError,
)
from stepengine.low.func import Either, assert_never, maybe_head, pick_uniform, pyd_replace, utcnow
from stepengine.state.store import StateStore
from stepengine.steps.api import CancellationToken, Services
from stepengine.steps.contract import configure_default_services, state_key, tick_boundary
from stepengine.steps.params import StepParameters, SupportedParameter, split_list
from stepengine.steps.telemetry import TelemetryContext

logger = logging.getLogger(__name__)

unknown_entity = "unknown"
default_max_consecutive_failure = 5
default_disk_sku = "Standard_LRS"
default_data_disk_count = 0
default_data_disk_size_gb = 1024
default_os_version = "latest"
default_platform = "win-x64"
tag_expiry = timedelta(days=2)

# VM SKUs of these families support premium disks
_premium_capable_vm_sku = re.compile(r"Standard_[A-M][0-9]+a*(?=s)", re.IGNORECASE)


class IterationState(str, Enum):
    creating = "Creating"
    created = "Created"
    deleting = "Deleting"
    deleted = "Deleted"
    creation_failed = "CreationFailed"
    deletion_failed = "DeletionFailed"


class ResourceIterationState(BaseModel):
    active_iteration_resource_group: ResourceGroupSpec | None = None
    active_iteration_state: IterationState | None = None
    consecutive_failures: int = 0
    maximum_consecutive_failure: int = default_max_consecutive_failure
    successful_iterations: list[str] = Field(
        default_factory=list, description="names of the VMs whose create went through, in order"
    )
    step_timeout: datetime | None = Field(
        None, description="deadline for the first deployment to settle, only when Timeout is given"
    )


def target_disk_sku(proposed: str, vm_sku: str) -> str:
    """The proposed disk SKU if the VM SKU can carry it, the safe default otherwise"""
    if proposed.lower() != default_disk_sku.lower() and not _premium_capable_vm_sku.search(vm_sku):
        return default_disk_sku
    return proposed


def select_vm_sku(allowed: list[str], session: ReservedSession | None, rng: random.Random) -> Either[str]:
    if not allowed:
        return Either.error("no VM SKU configured")
    if session is None:
        return Either.ok(pick_uniform(allowed, rng))
    if len(allowed) == 1:
        return Either.ok(allowed[0])
    lowered = {sku.lower(): sku for sku in allowed}
    if session.preferred_sku and session.preferred_sku.strip().lower() in lowered:
        return Either.ok(lowered[session.preferred_sku.strip().lower()])
    supported = {sku.strip().lower() for sku in session.supported_skus}
    candidates = [sku for sku in allowed if sku.lower() in supported]
    if not candidates:
        return Either.error(
            f"none of the VM SKUs {allowed} is available on session {session.id}, which supports {session.supported_skus}"
        )
    return Either.ok(pick_uniform(candidates, rng))


def parse_tags(raw: str | None) -> dict[str, str]:
    tags: dict[str, str] = {}
    for entry in split_list(raw or ""):
        k, sep, v = entry.partition("=")
        if not sep or not k.strip():
            raise ConfigurationError(f"tag {entry} is not of the key=value form")
        tags[k.strip()] = v.strip()
    return tags


class ResourceIterationController:
    supported_parameters: ClassVar[list[SupportedParameter]] = [
        SupportedParameter("Iterations", int, required=True),
        SupportedParameter("VmSize", str, required=True),
        SupportedParameter("Regions", str),
        SupportedParameter("UseTipSession", bool),
        SupportedParameter("PinnedCluster", str),
        SupportedParameter("MaxConsecutiveFailure", int),
        SupportedParameter("OsDiskStorageAccountType", str),
        SupportedParameter("DataDiskStorageAccountType", str),
        SupportedParameter("DataDiskSku", str),
        SupportedParameter("DataDiskCount", int),
        SupportedParameter("DataDiskSizeInGB", int),
        SupportedParameter("SigImageReference", str),
        SupportedParameter("OsPublisher", str),
        SupportedParameter("OsOffer", str),
        SupportedParameter("OsSku", str),
        SupportedParameter("OsVersion", str),
        SupportedParameter("Platform", str),
        SupportedParameter("EnableAcceleratedNetworking", bool),
        SupportedParameter("Tags", str),
    ]

    def __init__(
        self,
        store: StateStore,
        cloud: ProvisioningClient,
        sessions: SessionClient | None = None,
        services: Services | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.cloud = cloud
        self.sessions = sessions
        self.services = services if services is not None else Services()
        self.clock = clock
        self.rng = rng if rng is not None else random.Random()

    def validate_parameters(self, context: StepContext, parameters: StepParameters) -> None:
        has_regions = "Regions" in parameters
        use_session = parameters.get("UseTipSession")
        if has_regions and (use_session is None or use_session):
            raise ConfigurationError(
                "when regions are explicitly defined, the UseTipSession parameter must be defined and set to false"
            )
        if not has_regions and use_session is not None and not use_session:
            raise ConfigurationError("when reserved sessions are not used, the Regions parameter must be defined")
        if parameters.get("Iterations") < 1:
            raise ConfigurationError("parameter Iterations must be positive")
        if parameters.get("MaxConsecutiveFailure", default_max_consecutive_failure) < 0:
            raise ConfigurationError("parameter MaxConsecutiveFailure must not be negative")
        if parameters.get("DataDiskCount", default_data_disk_count) < 0:
            raise ConfigurationError("parameter DataDiskCount must not be negative")
        if not split_list(parameters.get("VmSize")):
            raise ConfigurationError("parameter VmSize lists no VM SKU")
        parse_tags(parameters.get("Tags"))

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
        state = self.store.get_state(key, ResourceIterationState)
        if state is None:
            state = ResourceIterationState(
                maximum_consecutive_failure=parameters.get("MaxConsecutiveFailure", default_max_consecutive_failure),
            )
            if (timeout := parameters.get("Timeout")) is not None:
                state.step_timeout = self.clock() + timeout
        try:
            return self._tick(context, parameters, state, telemetry, cancellation)
        finally:
            self.store.save_state(key, state)

    def _tick(
        self,
        context: StepContext,
        parameters: StepParameters,
        state: ResourceIterationState,
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> StepResult:
        if state.active_iteration_resource_group is None or state.active_iteration_state is None:
            if not cancellation.is_set():
                self._begin_iteration(context, parameters, state, telemetry, cancellation)
            return StepResult.in_progress()

        spec = state.active_iteration_resource_group
        telemetry.add("vmName", spec.vms[0].name)
        current = state.active_iteration_state
        if current == IterationState.creating:
            self._check_step_timeout(state)
            self._deploy(state, cancellation)
            self._classify_creation(state)
        elif current in (IterationState.created, IterationState.creation_failed):
            if not cancellation.is_set():
                self._delete(state, cancellation)
                state.active_iteration_state = IterationState.deleting
        elif current == IterationState.deleting:
            self._delete(state, cancellation)
            self._classify_deletion(state)
        elif current in (IterationState.deleted, IterationState.deletion_failed):
            iterations = parameters.get("Iterations")
            if len(state.successful_iterations) >= iterations:
                logger.info(f"all {iterations} iterations went through")
                return StepResult.succeeded()
            if not cancellation.is_set():
                self._begin_iteration(context, parameters, state, telemetry, cancellation)
        else:
            assert_never(current)
        return StepResult.in_progress()

    def _check_step_timeout(self, state: ResourceIterationState) -> None:
        # only guards the very first deployment, later iterations are bounded by the circuit breaker
        if state.step_timeout is None or state.successful_iterations or state.consecutive_failures:
            return
        if self.clock() > state.step_timeout:
            raise StepTimeoutError(
                f"timeout expired, the first resource group was not deployed by {state.step_timeout.isoformat()}"
            )

    def _begin_iteration(
        self,
        context: StepContext,
        parameters: StepParameters,
        state: ResourceIterationState,
        telemetry: TelemetryContext,
        cancellation: CancellationToken,
    ) -> None:
        spec = self.build_resource_group(context, parameters, telemetry)
        logger.info(f"starting iteration {len(state.successful_iterations) + 1} with resource group {spec.name}")
        state.active_iteration_resource_group = spec
        state.active_iteration_state = IterationState.creating
        self._deploy(state, cancellation)

    def _deploy(self, state: ResourceIterationState, cancellation: CancellationToken) -> None:
        spec = state.active_iteration_resource_group
        assert spec is not None
        try:
            state.active_iteration_resource_group = self.cloud.deploy_resource_group(spec, cancellation)
        except Exception as e:
            logger.exception(f"deployment of {spec.name} failed")
            state.active_iteration_resource_group = pyd_replace(
                spec, provisioning_state=ProvisioningState.failed, error=repr(e)
            )

    def _delete(self, state: ResourceIterationState, cancellation: CancellationToken) -> None:
        spec = state.active_iteration_resource_group
        assert spec is not None
        try:
            state.active_iteration_resource_group = self.cloud.delete_resource_group(spec, cancellation)
        except Exception as e:
            logger.exception(f"deletion of {spec.name} failed")
            state.active_iteration_resource_group = pyd_replace(
                spec, cleanup_state=CleanupState.failed, error=repr(e)
            )

    def _classify_creation(self, state: ResourceIterationState) -> None:
        spec = state.active_iteration_resource_group
        assert spec is not None
        vm_name = spec.vms[0].name
        if spec.is_successful:
            logger.info(f"virtual machine {vm_name} created")
            state.active_iteration_state = IterationState.created
            state.successful_iterations.append(vm_name)
            state.consecutive_failures = 0
        elif spec.is_failed:
            logger.warning(f"deployment of {spec.name} failed: {spec.error}")
            state.active_iteration_state = IterationState.creation_failed
            self._count_failure(state, "deploying")
        else:
            logger.debug(f"deployment of {spec.name} in progress")
            state.active_iteration_state = IterationState.creating

    def _classify_deletion(self, state: ResourceIterationState) -> None:
        spec = state.active_iteration_resource_group
        assert spec is not None
        if spec.cleanup_state == CleanupState.succeeded:
            logger.info(f"resource group {spec.name} deleted")
            state.active_iteration_state = IterationState.deleted
            # only a completed create -> delete cycle resets the count
            if spec.vms[0].name in state.successful_iterations:
                state.consecutive_failures = 0
        elif spec.cleanup_state in (CleanupState.not_started, CleanupState.accepted, CleanupState.deleting):
            logger.debug(f"deletion of {spec.name} in progress")
            state.active_iteration_state = IterationState.deleting
        else:
            logger.warning(f"deletion of {spec.name} failed: {spec.error}")
            state.active_iteration_state = IterationState.deletion_failed
            # the create -> delete cycle did not complete after all
            vm_name = spec.vms[0].name
            if vm_name in state.successful_iterations:
                state.successful_iterations.remove(vm_name)
            self._count_failure(state, "deleting")

    def _count_failure(self, state: ResourceIterationState, action: str) -> None:
        state.consecutive_failures += 1
        if state.consecutive_failures > state.maximum_consecutive_failure:
            name = state.active_iteration_resource_group.name if state.active_iteration_resource_group else None
            raise MaximumFailuresReachedError(
                f"reached maximum consecutive failures for {action} resource group {name} at {state.consecutive_failures} times"
            )

    ## specification

    def _session_entity(self, context: StepContext) -> Either[EnvironmentEntity]:
        entity = maybe_head(context.entities_of(EntityType.tip_session, context.group))
        if entity is None:
            return Either.error(f"a reserved session for experiment group {context.group} was not found")
        return Either.ok(entity)

    def _lookup_session(self, entity: EnvironmentEntity) -> Either[ReservedSession]:
        if self.sessions is None:
            return Either.error("no reserved session client is available")
        session = self.sessions.get_session(entity.id)
        if session is None:
            return Either.error(f"reserved session {entity.id} was not found")
        return Either.ok(session)

    def _session(self, context: StepContext) -> Either[ReservedSession]:
        return self._session_entity(context).chain(self._lookup_session)

    def build_resource_group(
        self, context: StepContext, parameters: StepParameters, telemetry: TelemetryContext
    ) -> ResourceGroupSpec:
        session: ReservedSession | None = None
        if parameters.get("UseTipSession", True):
            session = self._session(context).get_or_raise(EntityNotFoundError)
            region = session.region
            cluster = session.cluster_name
        else:
            region = pick_uniform(split_list(parameters.get("Regions")), self.rng)
            cluster = parameters.get("PinnedCluster")

        allowed = split_list(parameters.get("VmSize"))
        telemetry.add("vmSkusAllowed", ",".join(allowed))
        if session is not None:
            telemetry.add("vmSkusSupported", ",".join(session.supported_skus))
        vm_sku = select_vm_sku(allowed, session, self.rng).get_or_raise(ConfigurationError)
        telemetry.add("region", region)
        telemetry.add("vmSku", vm_sku)

        iteration_id = str(uuid.uuid4())
        prefix = iteration_id.replace("-", "")[:11]
        data_disks = [
            VmDisk(
                storage_account_type=target_disk_sku(parameters.get("DataDiskStorageAccountType", default_disk_sku), vm_sku),
                sku=target_disk_sku(parameters.get("DataDiskSku", default_disk_sku), vm_sku),
                lun=lun,
                size_in_gb=parameters.get("DataDiskSizeInGB", default_data_disk_size_gb),
            )
            for lun in range(parameters.get("DataDiskCount", default_data_disk_count))
        ]
        if (image_reference := parameters.get("SigImageReference")) is not None:
            image = {"id": image_reference}
        else:
            image = {
                "publisher": parameters.get("OsPublisher", ""),
                "offer": parameters.get("OsOffer", ""),
                "sku": parameters.get("OsSku", ""),
                "version": parameters.get("OsVersion", default_os_version),
            }
        vm = VmDefinition(
            name=f"{prefix}-0",
            deployment_name=f"deployment-{prefix}-0",
            vm_sku=vm_sku,
            os_disk_sku=target_disk_sku(parameters.get("OsDiskStorageAccountType", default_disk_sku), vm_sku),
            data_disks=data_disks,
            image=image,
            accelerated_networking=parameters.get("EnableAcceleratedNetworking", False),
        )

        now = self.clock()
        tags = {
            "experimentId": context.experiment_id,
            "experimentGroup": context.group or "",
            "experimentStepId": context.step_id,
            "tipSessionId": session.id if session is not None else unknown_entity,
            "nodeId": (session.node_id if session is not None else None) or unknown_entity,
            "createdDate": now.isoformat(),
            "expirationDate": (now + tag_expiry).isoformat(),
        }
        tags.update(parse_tags(parameters.get("Tags")))
        return ResourceGroupSpec(
            name=f"rg-{prefix}",
            region=region,
            cluster_id=cluster,
            platform=parameters.get("Platform", default_platform),
            tip_session_id=session.id if session is not None else None,
            node_id=session.node_id if session is not None else None,
            tags=tags,
            vms=[vm],
        )
