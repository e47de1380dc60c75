import threading

import pytest

from fakes import FakeClock, FakeProcessPlatform
from stepengine.platform.filesystem import FileSystem, LocalFileSystem
from stepengine.platform.secrets import EnvironmentSecretResolver, SecretResolver
from stepengine.state.store import InMemoryStateStore
from stepengine.steps.api import Services


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def platform():
    return FakeProcessPlatform()


@pytest.fixture(scope="function")
def store():
    return InMemoryStateStore()


@pytest.fixture(scope="function")
def secrets_environ():
    return {"EVENTHUB": "Endpoint=sb://hub/;SharedAccessKeyName=root;SharedAccessKey=s3cr3t"}


@pytest.fixture(scope="function")
def services(secrets_environ):
    services = Services()
    services.register(FileSystem, LocalFileSystem())
    services.register(SecretResolver, EnvironmentSecretResolver(secrets_environ))
    return services


@pytest.fixture(scope="function")
def cancellation():
    return threading.Event()


@pytest.fixture(scope="function")
def install_root(tmp_path):
    """A node with the worker package installed"""
    executable = tmp_path / "HostWorkloads.TipNode_1.0.0" / "content" / "win-x64" / "VirtualClient"
    executable.parent.mkdir(parents=True)
    executable.write_text("")
    return tmp_path
