"""
Tests the disk mapping handed to the worker process
"""

import orjson

from stepengine.low.core import AgentIdentification, EntityType, EnvironmentEntity, StepContext
from stepengine.platform.filesystem import LocalFileSystem
from stepengine.workloads.specification import disk_mapping, write_specification_file

agent = AgentIdentification(cluster_name="cluster01", node_name="node-1", virtual_machine_name="vm-1", context="tip-1")


def context_with(metadata: dict) -> StepContext:
    return StepContext(
        experiment_id="exp-1",
        step_id="step-1",
        agent=agent,
        entities=[
            EnvironmentEntity(entity_type=EntityType.virtual_machine, id="vm-0", agent_id="cluster01,node-0,vm-0,tip-1"),
            EnvironmentEntity(
                entity_type=EntityType.virtual_machine,
                id="vm-1",
                agent_id="CLUSTER01,NODE-1,VM-1,TIP-1",
                metadata=metadata,
            ),
        ],
    )


def test_disk_mapping():
    data_disks = "storageAccountType=Premium_LRS,sku=Premium_LRS,lun=0,sizeInGB=256|storageAccountType=Standard_LRS,sku=Standard_LRS,lun=1,sizeInGB=512"
    assert disk_mapping("Premium_LRS", data_disks) == [
        {"id": -1, "name": "osDiskSku", "type": "Premium_LRS"},
        {"id": 0, "name": "dataDiskSku", "type": "Premium_LRS"},
        {"id": 1, "name": "dataDiskSku", "type": "Standard_LRS"},
    ]
    assert disk_mapping(None, " ") == []


def test_write(tmp_path):
    path = str(tmp_path / "Specifications.json")
    context = context_with({"osDiskSku": "Standard_LRS", "dataDisks": "storageAccountType=Standard_LRS,sku=Standard_LRS,lun=0,sizeInGB=1024"})

    assert write_specification_file(context, path, LocalFileSystem())

    assert orjson.loads((tmp_path / "Specifications.json").read_bytes()) == {
        "diskMapping": [
            {"id": -1, "name": "osDiskSku", "type": "Standard_LRS"},
            {"id": 0, "name": "dataDiskSku", "type": "Standard_LRS"},
        ]
    }
    # written once only
    assert not write_specification_file(context, path, LocalFileSystem())


def test_nothing_to_write(tmp_path):
    path = str(tmp_path / "Specifications.json")
    assert not write_specification_file(context_with({}), path, LocalFileSystem())
    assert not write_specification_file(StepContext(experiment_id="exp-1", step_id="step-1"), path, LocalFileSystem())
    assert not (tmp_path / "Specifications.json").exists()


class FlakyFileSystem(LocalFileSystem):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0

    def write_text(self, path: str, content: str) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OSError("the file is in use by another process")
        super().write_text(path, content)


def test_write_retries(tmp_path):
    path = str(tmp_path / "Specifications.json")
    context = context_with({"osDiskSku": "Standard_LRS"})
    sleeps: list[float] = []

    fs = FlakyFileSystem(failures=2)
    assert write_specification_file(context, path, fs, sleep=sleeps.append)
    assert fs.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_write_gives_up_quietly(tmp_path):
    path = str(tmp_path / "Specifications.json")
    fs = FlakyFileSystem(failures=100)

    assert not write_specification_file(context_with({"osDiskSku": "Standard_LRS"}), path, fs, sleep=lambda s: None)
    assert fs.attempts == 11
