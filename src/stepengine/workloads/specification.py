"""
The `Specifications.json` handed to the worker process, describing the disks of the
VM it runs on. Best effort only: a worker without it still runs
"""

import logging
import os
from datetime import timedelta
from typing import Any

import orjson

from stepengine.clients.api import VmDisk
from stepengine.low.core import EntityType, StepContext
from stepengine.low.func import maybe_head, retry_linear
from stepengine.platform.filesystem import FileSystem

logger = logging.getLogger(__name__)

SPECIFICATION_FILE = "Specifications.json"
write_retries = 10
write_retry_delay = timedelta(seconds=1)


def disk_mapping(os_disk_sku: str | None, data_disks: str | None) -> list[dict[str, Any]]:
    """OS disk first with id -1, then data disks by their lun"""
    mapping: list[dict[str, Any]] = []
    if os_disk_sku and os_disk_sku.strip():
        mapping.append({"id": -1, "name": "osDiskSku", "type": os_disk_sku})
    if data_disks and data_disks.strip():
        for disk in VmDisk.parse_many(data_disks):
            mapping.append({"id": disk.lun, "name": "dataDiskSku", "type": disk.sku})
    return mapping


def write_specification_file(
    context: StepContext, path: str, fs: FileSystem, sleep=None
) -> bool:
    """Writes the disk mapping of this agent's VM to `path`, unless already there. Returns
    whether the file was written. Never raises"""
    try:
        if fs.exists(path):
            logger.debug(f"specification file {path} already exists")
            return False
        agent_id = str(context.agent) if context.agent is not None else None
        vm = maybe_head(
            entity
            for entity in context.entities_of(EntityType.virtual_machine)
            if agent_id is not None and (entity.agent_id or "").lower() == agent_id.lower()
        )
        if vm is None:
            logger.debug(f"no virtual machine entity for agent {agent_id}, not writing {path}")
            return False
        mapping = disk_mapping(vm.metadata.get("osDiskSku"), vm.metadata.get("dataDisks"))
        if not mapping:
            return False
        content = orjson.dumps({"diskMapping": mapping}).decode("utf-8")
        kwargs = {} if sleep is None else {"sleep": sleep}
        retry_linear(
            lambda: fs.write_text(path, content),
            retries=write_retries,
            delay=write_retry_delay,
            retry_on=(OSError,),
            **kwargs,
        )
        logger.info(f"wrote specification file {os.path.basename(path)} with {len(mapping)} disks")
        return True
    except Exception:
        logger.warning(f"failed to write specification file {path}", exc_info=True)
        return False
