"""
Container runtime client abstraction.

Defines the backend contract the lifecycle code is written against and a
Docker engine implementation built on the docker SDK's low-level APIClient.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from .exceptions import BackendError, ImageNotFoundError, ImagePullError

logger = logging.getLogger(__name__)


@dataclass
class RuntimeContainer:
    """Read-only view of a backend container."""
    id: str
    name: str
    running: bool = False
    status: str = ""
    tty: bool = False
    host_config: Dict[str, Any] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


class RuntimeClient(ABC):
    """
    Abstract container backend.

    Every method is blocking. Implementations raise BackendError (or a
    subclass) for any failure reported by the backend.
    """

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[RuntimeContainer]:
        """Return the container with exactly this name, or None."""
        pass

    @abstractmethod
    def list_containers(self, labels: Dict[str, str]) -> List[RuntimeContainer]:
        """Return all containers (running or not) carrying every given label."""
        pass

    @abstractmethod
    def create(self, config: Dict[str, Any], name: str) -> str:
        """
        Create a container and return its id.

        Raises:
            ImageNotFoundError: If the image is not available locally
        """
        pass

    @abstractmethod
    def inspect(self, container_id: str) -> RuntimeContainer:
        pass

    @abstractmethod
    def start(self, container_id: str, host_config: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def stop(self, container_id: str, timeout: int) -> None:
        pass

    @abstractmethod
    def restart(self, container_id: str, timeout: int) -> None:
        pass

    @abstractmethod
    def remove(self, container_id: str, force: bool = False, remove_volumes: bool = False) -> None:
        pass

    @abstractmethod
    def pull_image(self, image: str, auth: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def stream_logs(
        self,
        container_id: str,
        follow: bool = True,
        stdout: bool = True,
        stderr: bool = True,
        tail: int = 10
    ) -> Iterator[bytes]:
        """
        Open the raw log stream of a container.

        For TTY containers the chunks are plain text. Otherwise they carry
        the engine's multiplexed framing (8-byte header per frame).
        """
        pass


class DockerRuntimeClient(RuntimeClient):
    """RuntimeClient backed by a Docker-compatible engine API."""

    def __init__(self, api: Optional[docker.APIClient] = None, base_url: Optional[str] = None,
                 timeout: int = 60):
        if api is None:
            if base_url:
                api = docker.APIClient(base_url=base_url, timeout=timeout)
            else:
                api = docker.from_env(timeout=timeout).api
        self._api = api

    @classmethod
    def from_env(cls, base_url: Optional[str] = None, timeout: int = 60) -> "DockerRuntimeClient":
        """Connect using DOCKER_HOST and friends, or an explicit base URL."""
        try:
            return cls(base_url=base_url, timeout=timeout)
        except DockerException as e:
            raise BackendError(f"Docker is not available: {e}") from e

    @staticmethod
    def _to_container(data: Dict[str, Any]) -> RuntimeContainer:
        """Build a RuntimeContainer from either an inspect or a list payload."""
        config = data.get("Config") or {}
        state = data.get("State")
        if isinstance(state, dict):
            running = bool(state.get("Running"))
            status = state.get("Status", "")
        else:
            status = state or ""
            running = status == "running"

        name = data.get("Name")
        if not name:
            names = data.get("Names") or [""]
            name = names[0]

        return RuntimeContainer(
            id=data["Id"],
            name=name.lstrip("/"),
            running=running,
            status=status,
            tty=bool(config.get("Tty")),
            host_config=dict(data.get("HostConfig") or {}),
            labels=dict(config.get("Labels") or data.get("Labels") or {}),
        )

    def find_by_name(self, name: str) -> Optional[RuntimeContainer]:
        try:
            containers = self._api.containers(all=True, filters={"name": name})
        except DockerException as e:
            raise BackendError(f"Failed to look up container {name}: {e}") from e

        # The engine's name filter is a substring match
        for container in containers:
            names = [n.lstrip("/") for n in container.get("Names") or []]
            if name in names:
                return self._to_container(container)
        return None

    def list_containers(self, labels: Dict[str, str]) -> List[RuntimeContainer]:
        label_filter = [f"{key}={value}" for key, value in labels.items()]
        try:
            containers = self._api.containers(all=True, filters={"label": label_filter})
        except DockerException as e:
            raise BackendError(f"Failed to list containers for {labels}: {e}") from e
        return [self._to_container(c) for c in containers]

    def create(self, config: Dict[str, Any], name: str) -> str:
        config = dict(config)
        # Engine-format HostConfig ("Links", "IpcMode", ...) goes into the body as-is
        host_config = config.pop("host_config", None) or None
        try:
            result = self._api.create_container(name=name, host_config=host_config, **config)
        except ImageNotFound as e:
            raise ImageNotFoundError(config.get("image", ""), str(e)) from e
        except DockerException as e:
            raise BackendError(f"Failed to create container {name}: {e}") from e
        return result["Id"]

    def inspect(self, container_id: str) -> RuntimeContainer:
        try:
            return self._to_container(self._api.inspect_container(container_id))
        except DockerException as e:
            raise BackendError(f"Failed to inspect container {container_id}: {e}") from e

    def start(self, container_id: str, host_config: Optional[Dict[str, Any]] = None) -> None:
        # Engines since API 1.24 only take a host config at create time
        if host_config:
            logger.debug(f"Starting container {container_id} with host config {host_config}")
        try:
            self._api.start(container_id)
        except DockerException as e:
            raise BackendError(f"Failed to start container {container_id}: {e}") from e

    def stop(self, container_id: str, timeout: int) -> None:
        try:
            self._api.stop(container_id, timeout=timeout)
        except DockerException as e:
            raise BackendError(f"Failed to stop container {container_id}: {e}") from e

    def restart(self, container_id: str, timeout: int) -> None:
        try:
            self._api.restart(container_id, timeout=timeout)
        except DockerException as e:
            raise BackendError(f"Failed to restart container {container_id}: {e}") from e

    def remove(self, container_id: str, force: bool = False, remove_volumes: bool = False) -> None:
        try:
            self._api.remove_container(container_id, v=remove_volumes, force=force)
        except NotFound:
            logger.debug(f"Container {container_id} already removed")
        except DockerException as e:
            raise BackendError(f"Failed to remove container {container_id}: {e}") from e

    def pull_image(self, image: str, auth: Optional[Dict[str, Any]] = None) -> None:
        repository, tag = parse_repository_tag(image)
        try:
            for event in self._api.pull(
                repository,
                tag=tag or None,
                stream=True,
                decode=True,
                auth_config=auth
            ):
                if "error" in event:
                    raise ImagePullError(image, event["error"])
        except DockerException as e:
            raise ImagePullError(image, str(e)) from e

    def stream_logs(
        self,
        container_id: str,
        follow: bool = True,
        stdout: bool = True,
        stderr: bool = True,
        tail: int = 10
    ) -> Iterator[bytes]:
        params = {
            "follow": int(follow),
            "stdout": int(stdout),
            "stderr": int(stderr),
            "tail": tail,
        }
        try:
            response = self._raw_get("/containers/{0}/logs", container_id, params=params)
        except DockerException as e:
            raise BackendError(f"Failed to stream logs for {container_id}: {e}") from e
        return _ResponseChunks(response)

    def _raw_get(self, path: str, *args: str, params: Dict[str, Any]):
        """
        Streaming GET returning the undecoded HTTP response.

        APIClient.logs() strips the stream type from multiplexed frames, so
        this goes through the APIClient request helpers (_url, _get,
        _raise_for_status). They are not public API; they have kept these
        signatures across docker 4.x to 7.x and this is the only place Berth
        relies on them.
        """
        url = self._api._url(path, *args)
        response = self._api._get(url, params=params, stream=True)
        self._api._raise_for_status(response)
        return response


class _ResponseChunks:
    """Iterator over a streaming HTTP response that can be closed from another thread."""

    CHUNK_SIZE = 4096

    def __init__(self, response):
        self._response = response
        self._chunks = response.raw.stream(self.CHUNK_SIZE, decode_content=False)

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        return next(self._chunks)

    def close(self) -> None:
        self._response.close()
