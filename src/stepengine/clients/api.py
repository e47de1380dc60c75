"""
Contracts of the external provisioning and reserved-session services. Only the shapes the
resource iteration depends on. No cloud SDK lives in this package
"""

import re
import threading
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ProvisioningState(str, Enum):
    pending = "Pending"
    running = "Running"
    succeeded = "Succeeded"
    failed = "Failed"


class CleanupState(str, Enum):
    not_started = "NotStarted"
    accepted = "Accepted"
    deleting = "Deleting"
    succeeded = "Succeeded"
    failed = "Failed"


_disk_field = re.compile(r"^\s*(?P<key>\w+)\s*=\s*(?P<value>[^,]*?)\s*$")


class VmDisk(BaseModel):
    storage_account_type: str
    sku: str
    lun: int
    size_in_gb: int

    def __str__(self) -> str:
        return f"storageAccountType={self.storage_account_type},sku={self.sku},lun={self.lun},sizeInGB={self.size_in_gb}"

    @classmethod
    def parse(cls, raw: str) -> "VmDisk":
        """Inverse of `__str__`"""
        fields: dict[str, str] = {}
        for part in raw.split(","):
            if (m := _disk_field.match(part)) is None:
                raise ValueError(f"malformed disk description: {raw}")
            fields[m.group("key").lower()] = m.group("value")
        try:
            return cls(
                storage_account_type=fields["storageaccounttype"],
                sku=fields["sku"],
                lun=int(fields["lun"]),
                size_in_gb=int(fields["sizeingb"]),
            )
        except KeyError as e:
            raise ValueError(f"disk description {raw} lacks {e}")

    @classmethod
    def parse_many(cls, raw: str) -> list["VmDisk"]:
        return [cls.parse(part) for part in raw.split("|") if part.strip()]


class VmDefinition(BaseModel):
    name: str
    deployment_name: str
    vm_sku: str
    os_disk_sku: str
    data_disks: list[VmDisk] = Field(default_factory=list)
    image: dict[str, str] = Field(description="either {'id': ...} of a gallery image or publisher/offer/sku/version")
    accelerated_networking: bool = False
    provisioning_state: ProvisioningState = ProvisioningState.pending
    error: str | None = None


class ResourceGroupSpec(BaseModel):
    name: str
    region: str
    cluster_id: str | None = None
    platform: str = "win-x64"
    tip_session_id: str | None = None
    node_id: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    vms: list[VmDefinition]
    provisioning_state: ProvisioningState = ProvisioningState.pending
    cleanup_state: CleanupState = CleanupState.not_started
    error: str | None = None

    @property
    def is_successful(self) -> bool:
        return self.provisioning_state == ProvisioningState.succeeded and all(
            vm.provisioning_state == ProvisioningState.succeeded for vm in self.vms
        )

    @property
    def is_failed(self) -> bool:
        return self.provisioning_state == ProvisioningState.failed or any(
            vm.provisioning_state == ProvisioningState.failed for vm in self.vms
        )


class ReservedSession(BaseModel):
    id: str
    region: str
    cluster_name: str
    node_id: str | None = None
    supported_skus: list[str] = Field(default_factory=list)
    preferred_sku: str | None = None


@runtime_checkable
class ProvisioningClient(Protocol):
    def deploy_resource_group(self, spec: ResourceGroupSpec, cancellation: threading.Event) -> ResourceGroupSpec:
        """Starts the deployment, or refreshes the status of one in flight. Returns the updated spec"""
        raise NotImplementedError

    def delete_resource_group(self, spec: ResourceGroupSpec, cancellation: threading.Event) -> ResourceGroupSpec:
        """Starts the deletion, or refreshes the status of one in flight. Returns the updated spec"""
        raise NotImplementedError


@runtime_checkable
class SessionClient(Protocol):
    def get_session(self, session_id: str) -> ReservedSession | None:
        raise NotImplementedError
