"""
Shared fixtures for core tests.
"""

import threading
from typing import Any, Dict, List, Optional

import pytest

from berth.core.config_manager import ServiceConfig
from berth.core.exceptions import BackendError, ImageNotFoundError, ImagePullError
from berth.core.project import Context, Project
from berth.core.registry import CredentialStore, with_default_tag
from berth.core.runtime_client import RuntimeClient, RuntimeContainer


class FakeRuntimeClient(RuntimeClient):
    """In-memory container engine that records every call."""

    def __init__(self):
        self.containers: Dict[str, RuntimeContainer] = {}
        self.create_requests: Dict[str, Dict[str, Any]] = {}
        self.images = set()  # references with an explicit tag
        self.pull_failures: Dict[str, str] = {}
        self.pulls: List[tuple] = []
        self.logs: Dict[str, List[bytes]] = {}
        self.calls: List[tuple] = []
        self._next_id = 0

    def add_container(self, name: str, labels: Optional[Dict[str, str]] = None,
                      running: bool = False, tty: bool = False) -> RuntimeContainer:
        self._next_id += 1
        container = RuntimeContainer(
            id=f"{self._next_id:064x}",
            name=name,
            running=running,
            status="running" if running else "created",
            tty=tty,
            labels=dict(labels or {}),
        )
        self.containers[name] = container
        return container

    def _by_id(self, container_id: str) -> RuntimeContainer:
        for container in self.containers.values():
            if container.id == container_id:
                return container
        raise BackendError(f"No such container: {container_id}")

    def calls_named(self, op: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == op]

    def find_by_name(self, name):
        self.calls.append(("find_by_name", name))
        return self.containers.get(name)

    def list_containers(self, labels):
        self.calls.append(("list_containers", dict(labels)))
        return [
            c for c in self.containers.values()
            if all(c.labels.get(k) == v for k, v in labels.items())
        ]

    def create(self, config, name):
        self.calls.append(("create", name))
        if name in self.containers:
            raise BackendError(f"Conflict. The container name \"/{name}\" is already in use")
        if with_default_tag(config["image"]) not in self.images:
            raise ImageNotFoundError(config["image"])
        self.create_requests[name] = config
        container = self.add_container(name, labels=config["labels"], tty=config.get("tty", False))
        container.host_config = dict(config.get("host_config") or {})
        return container.id

    def inspect(self, container_id):
        self.calls.append(("inspect", container_id))
        return self._by_id(container_id)

    def start(self, container_id, host_config=None):
        self.calls.append(("start", container_id, dict(host_config or {})))
        container = self._by_id(container_id)
        container.running = True
        container.status = "running"

    def stop(self, container_id, timeout):
        self.calls.append(("stop", container_id, timeout))
        container = self._by_id(container_id)
        container.running = False
        container.status = "exited"

    def restart(self, container_id, timeout):
        self.calls.append(("restart", container_id, timeout))
        container = self._by_id(container_id)
        container.running = True
        container.status = "running"

    def remove(self, container_id, force=False, remove_volumes=False):
        self.calls.append(("remove", container_id, force, remove_volumes))
        container = self._by_id(container_id)
        del self.containers[container.name]

    def pull_image(self, image, auth=None):
        self.calls.append(("pull_image", image))
        self.pulls.append((image, auth))
        if image in self.pull_failures:
            raise ImagePullError(image, self.pull_failures[image])
        self.images.add(image)

    def stream_logs(self, container_id, follow=True, stdout=True, stderr=True, tail=10):
        self.calls.append(("stream_logs", container_id, follow, stdout, stderr, tail))
        self._by_id(container_id)
        return iter(self.logs.get(container_id, []))


class BlockingStream:
    """Follow-mode log stream that yields nothing and blocks until closed."""

    def __init__(self, timeout: float = 5):
        self.opened = threading.Event()
        self.closed = threading.Event()
        self.finished = threading.Event()
        self.timeout = timeout
        self.timed_out: Optional[bool] = None

    def __iter__(self):
        self.opened.set()
        return self

    def __next__(self):
        self.timed_out = not self.closed.wait(self.timeout)
        self.finished.set()
        raise StopIteration

    def close(self) -> None:
        self.closed.set()


class RecordingSink:
    """Log sink keeping stdout and stderr bytes apart."""

    def __init__(self):
        self.stdout = b""
        self.stderr = b""

    def out(self, data: bytes) -> None:
        self.stdout += data

    def err(self, data: bytes) -> None:
        self.stderr += data


@pytest.fixture
def fake_client():
    """An empty in-memory engine."""
    return FakeRuntimeClient()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def make_project(fake_client):
    """Factory building a project of service configs on the fake engine."""

    def _make(services: Dict[str, Dict[str, Any]], name: str = "demo", **context_options) -> Project:
        configs = {key: ServiceConfig(**value) for key, value in services.items()}
        options = {"log": False}
        options.update(context_options)
        context = Context(
            client=fake_client,
            project_name=name,
            credential_store=options.pop("credential_store", CredentialStore()),
            **options
        )
        for config in configs.values():
            fake_client.images.add(with_default_tag(config.image))
        return Project(configs, context)

    return _make


@pytest.fixture
def add_service_container(fake_client):
    """Create an engine container owned by a service, bypassing the lifecycle code."""

    def _add(project: Project, service: str, name: str, running: bool = True) -> RuntimeContainer:
        labels = project.create_service(service).ownership_labels()
        return fake_client.add_container(name, labels=labels, running=running)

    return _add


@pytest.fixture
def blocking_stream():
    return BlockingStream()
