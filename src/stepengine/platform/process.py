"""
Starting, finding and killing OS processes. The controllers only ever talk to the
`ProcessPlatform` protocol, `PsutilProcessPlatform` is the real thing
"""

import logging
import subprocess
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import psutil

logger = logging.getLogger(__name__)


@dataclass
class ProcessHandle:
    pid: int
    name: str
    # NOTE only set when we spawned the process ourselves, adopted processes carry just `proc`
    popen: subprocess.Popen | None = field(default=None, repr=False, compare=False)
    proc: psutil.Process | None = field(default=None, repr=False, compare=False)


@runtime_checkable
class ProcessPlatform(Protocol):
    def start(self, command: str, args: list[str], working_dir: str | None) -> ProcessHandle:
        raise NotImplementedError

    def try_find_by_pid(self, pid: int) -> ProcessHandle | None:
        raise NotImplementedError

    def try_find_by_name(self, name: str) -> ProcessHandle | None:
        """None if nothing matches, raises if the name is ambiguous"""
        raise NotImplementedError

    def kill(self, handle: ProcessHandle) -> None:
        raise NotImplementedError

    def has_exited(self, handle: ProcessHandle) -> bool:
        raise NotImplementedError

    def exit_code(self, handle: ProcessHandle) -> int | None:
        raise NotImplementedError


def _handle_of(proc: psutil.Process) -> ProcessHandle:
    return ProcessHandle(pid=proc.pid, name=proc.name(), proc=proc)


class PsutilProcessPlatform:
    def start(self, command: str, args: list[str], working_dir: str | None) -> ProcessHandle:
        popen = subprocess.Popen(
            [command, *args],
            cwd=working_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        try:
            proc = psutil.Process(popen.pid)
            name = proc.name()
        except psutil.NoSuchProcess:
            # exited before we could look at it, the caller finds out via has_exited
            proc = None
            name = command
        logger.debug(f"started process {popen.pid} ({name})")
        return ProcessHandle(pid=popen.pid, name=name, popen=popen, proc=proc)

    def try_find_by_pid(self, pid: int) -> ProcessHandle | None:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return _handle_of(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def try_find_by_name(self, name: str) -> ProcessHandle | None:
        matches = []
        for proc in psutil.process_iter(["name", "status"]):
            if proc.info["name"] == name and proc.info["status"] != psutil.STATUS_ZOMBIE:
                matches.append(proc)
        if len(matches) > 1:
            raise ValueError(f"multiple processes named {name}: {[p.pid for p in matches]}")
        if not matches:
            return None
        return _handle_of(matches[0])

    def kill(self, handle: ProcessHandle) -> None:
        try:
            if handle.popen is not None:
                handle.popen.kill()
                handle.popen.wait(timeout=10)
            else:
                proc = handle.proc or psutil.Process(handle.pid)
                proc.kill()
                proc.wait(timeout=10)
        except (psutil.NoSuchProcess, ProcessLookupError):
            logger.debug(f"process {handle.pid} already gone at kill")

    def has_exited(self, handle: ProcessHandle) -> bool:
        if handle.popen is not None:
            return handle.popen.poll() is not None
        try:
            proc = handle.proc or psutil.Process(handle.pid)
            return not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return True

    def exit_code(self, handle: ProcessHandle) -> int | None:
        if handle.popen is not None:
            return handle.popen.poll()
        return None
