"""
Tests the simulated provisioning service the resource iteration runs against locally
"""

import threading

import pytest

from stepengine.clients.api import (
    CleanupState,
    ProvisioningState,
    ResourceGroupSpec,
    VmDefinition,
    VmDisk,
)
from stepengine.clients.simulator import SimulatedCloud


def spec_named(name: str) -> ResourceGroupSpec:
    return ResourceGroupSpec(
        name=name,
        region="East US",
        vms=[
            VmDefinition(
                name=f"{name}-0",
                deployment_name=f"deployment-{name}-0",
                vm_sku="Standard_D2s_v3",
                os_disk_sku="Standard_LRS",
                image={"id": "img"},
            )
        ],
    )


def test_deploy_then_delete():
    cloud = SimulatedCloud(settle_after=3)
    cancellation = threading.Event()
    spec = spec_named("rg-a")

    states = []
    for _ in range(4):
        spec = cloud.deploy_resource_group(spec, cancellation)
        states.append(spec.provisioning_state)
    assert states == [ProvisioningState.running, ProvisioningState.running, ProvisioningState.succeeded, ProvisioningState.succeeded]
    assert spec.is_successful
    assert cloud.deploy_polls["rg-a"] == 3
    assert cloud.live == {"rg-a"}

    states = []
    for _ in range(4):
        spec = cloud.delete_resource_group(spec, cancellation)
        states.append(spec.cleanup_state)
    assert states == [CleanupState.accepted, CleanupState.deleting, CleanupState.succeeded, CleanupState.succeeded]
    assert cloud.live == set()


def test_scripted_outcomes():
    cloud = SimulatedCloud(deploy_outcomes=[ProvisioningState.failed, RuntimeError("throttled")])
    cancellation = threading.Event()

    failed = cloud.deploy_resource_group(spec_named("rg-a"), cancellation)
    assert failed.is_failed
    assert failed.vms[0].error is not None

    for _ in range(2):
        with pytest.raises(RuntimeError):
            cloud.deploy_resource_group(spec_named("rg-b"), cancellation)

    assert cloud.deploy_resource_group(spec_named("rg-c"), cancellation).is_successful


def test_settle_after_must_be_positive():
    with pytest.raises(ValueError):
        SimulatedCloud(settle_after=0)


def test_disk_descriptions():
    disks = [
        VmDisk(storage_account_type="Premium_LRS", sku="Premium_LRS", lun=0, size_in_gb=256),
        VmDisk(storage_account_type="Standard_LRS", sku="Standard_LRS", lun=1, size_in_gb=1024),
    ]
    raw = "storageAccountType=Premium_LRS,sku=Premium_LRS,lun=0,sizeInGB=256|storageAccountType=Standard_LRS,sku=Standard_LRS,lun=1,sizeInGB=1024"
    assert "|".join(str(disk) for disk in disks) == raw
    assert VmDisk.parse_many(raw) == disks

    with pytest.raises(ValueError):
        VmDisk.parse("sku=Premium_LRS,lun=0")
    with pytest.raises(ValueError):
        VmDisk.parse("garbage")
