"""
Tests the psutil process platform against real processes of the current interpreter
"""

import os
import sys

import pytest

from stepengine.platform.process import ProcessPlatform, PsutilProcessPlatform


def test_lifecycle(tmp_path):
    platform = PsutilProcessPlatform()
    assert isinstance(platform, ProcessPlatform)

    handle = platform.start(sys.executable, ["-c", "import time; time.sleep(60)"], str(tmp_path))
    try:
        assert not platform.has_exited(handle)
        assert platform.exit_code(handle) is None

        found = platform.try_find_by_pid(handle.pid)
        assert found is not None
        assert found.pid == handle.pid
        assert found.name == handle.name
        # an adopted handle works without the Popen object
        assert not platform.has_exited(found)
    finally:
        platform.kill(handle)

    assert platform.has_exited(handle)
    assert platform.try_find_by_pid(handle.pid) is None
    # killing an exited process is tolerated
    platform.kill(handle)


def test_exit_on_start():
    platform = PsutilProcessPlatform()
    handle = platform.start(sys.executable, ["-c", "raise SystemExit(3)"], None)
    handle.popen.wait(timeout=30)
    assert platform.has_exited(handle)
    assert platform.exit_code(handle) == 3


def test_start_missing_executable(tmp_path):
    with pytest.raises(OSError):
        PsutilProcessPlatform().start(os.path.join(str(tmp_path), "missing"), [], None)


def test_find_by_name_of_nothing():
    assert PsutilProcessPlatform().try_find_by_name("surely-no-such-process-name") is None
