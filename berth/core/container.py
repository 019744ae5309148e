"""
Container lifecycle for one named instance of a service.

A ContainerHandle holds no backend state: every operation looks the container
up by name, so handles are cheap to create and safe to recreate.
"""

import weakref
from enum import Enum
from typing import Any, Dict, Optional

from docker.errors import DockerException

from .dependencies import DependencyResolver
from .exceptions import BackendError, BerthError, ImageNotFoundError, ImagePullError
from .log_streamer import LogSink, LogStreamer, LogTask
from .logging_config import get_logger
from .project import Context, Service
from .registry import resolve_index, with_default_tag
from .runtime_client import RuntimeContainer

logger = get_logger(__name__)


class ContainerState(str, Enum):
    """Backend container states."""
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class ContainerHandle:
    """
    Lifecycle operations for one named container of a service.

    States: ABSENT -> CREATED -> RUNNING <-> STOPPED. The state is read from
    the backend on every call.

    Example:
        handle = project.create_service("web").container(1)
        await handle.up()
        await handle.down()
    """

    def __init__(self, name: str, service: Service):
        self._name = name
        self._service_ref = weakref.ref(service)

    def __repr__(self) -> str:
        return f"ContainerHandle({self._name!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def service(self) -> Service:
        service = self._service_ref()
        if service is None:
            raise RuntimeError(f"Service owning container '{self._name}' no longer exists")
        return service

    @property
    def _context(self) -> Context:
        return self.service.context

    def find(self) -> Optional[RuntimeContainer]:
        """Look the container up by name."""
        return self._context.client.find_by_name(self._name)

    def id(self) -> Optional[str]:
        """Backend id of the container, or None if it does not exist."""
        container = self.find()
        return container.id if container else None

    def state(self) -> ContainerState:
        container = self.find()
        if container is None:
            return ContainerState.ABSENT
        info = self._context.client.inspect(container.id)
        if info.running:
            return ContainerState.RUNNING
        if info.status == "created":
            return ContainerState.CREATED
        return ContainerState.STOPPED

    async def create(self) -> RuntimeContainer:
        """
        Return the existing container, creating it if absent.

        A missing image is pulled once and the create retried.

        Raises:
            DependencyError: If relationships cannot be resolved
            ImagePullError: If the image is missing and cannot be pulled
            BackendError: If the backend rejects the create
        """
        container = self.find()
        if container is not None:
            return container
        return self._create_container()

    def _create_request(self) -> Dict[str, Any]:
        service = self.service
        request = service.config.to_create_request()

        labels = self._context.labels
        request["labels"][labels.container] = self._name
        request["labels"][labels.service] = service.name
        request["labels"][labels.project] = service.project.name

        DependencyResolver(service).populate(request["host_config"])
        return request

    def _create_container(self) -> RuntimeContainer:
        client = self._context.client
        request = self._create_request()

        logger.debug(f"Creating container {self._name} {request}")
        try:
            try:
                client.create(request, self._name)
            except ImageNotFoundError:
                logger.info(f"Image {request['image']} not found locally for {self._name}, pulling")
                self._pull(request["image"])
                client.create(request, self._name)
        except BackendError as e:
            logger.debug(f"Failed to create container {self._name}: {e}")
            raise

        container = self.find()
        if container is None:
            raise BackendError(f"Container {self._name} was created but cannot be found")
        logger.info(f"Created container {self._name} ({container.id[:12]})")
        return container

    async def up(self) -> Optional[LogTask]:
        """
        Create the container if needed and start it if it is not running.

        Dependencies are resolved again before start, since target containers
        may have appeared since the create.

        Returns:
            The log forwarding task if one was started, else None
        """
        client = self._context.client
        container = await self.create()

        info = client.inspect(container.id)
        if info.running:
            logger.debug(f"Container {self._name} is already running")
            return None

        host_config = dict(info.host_config)
        DependencyResolver(self.service).populate(host_config)

        logger.debug(f"Starting container {self._name}: {host_config}")
        client.start(container.id, host_config)
        logger.info(f"Started container {self._name}")

        if self._context.log:
            return LogStreamer(self).spawn()
        return None

    async def down(self) -> None:
        """Stop the container gracefully. No-op if it does not exist."""
        container = self.find()
        if container is None:
            return
        logger.info(f"Stopping container {self._name}")
        self._context.client.stop(container.id, self._context.timeout)

    async def delete(self) -> None:
        """Stop (if running) and remove the container, keeping its volumes."""
        container = self.find()
        if container is None:
            return

        client = self._context.client
        info = client.inspect(container.id)
        if info.running:
            logger.info(f"Stopping container {self._name} before removal")
            client.stop(container.id, self._context.timeout)

        client.remove(container.id, force=True, remove_volumes=False)
        logger.info(f"Removed container {self._name}")

    async def restart(self) -> None:
        """Restart the container with the configured grace period. No-op if absent."""
        container = self.find()
        if container is None:
            return
        logger.info(f"Restarting container {self._name}")
        self._context.client.restart(container.id, self._context.timeout)

    async def pull(self) -> None:
        """Pull the service image."""
        self._pull(self.service.config.image)

    def _pull(self, image: str) -> None:
        reference = with_default_tag(image)

        logger.info(f"Pulling image {reference}")
        try:
            try:
                auth = self._context.credential_store.resolve(resolve_index(reference))
            except DockerException as e:
                raise ImagePullError(reference, f"Cannot resolve registry credentials: {e}") from e
            self._context.client.pull_image(reference, auth)
        except ImagePullError as e:
            logger.error(f"Failed to pull image {reference}: {e}")
            raise
        except BackendError as e:
            logger.error(f"Failed to pull image {reference}: {e}")
            raise ImagePullError(reference, str(e)) from e

    async def log(self, sink: Optional[LogSink] = None) -> None:
        """Forward the container's output in the foreground until the stream ends."""
        streamer = LogStreamer(self, sink)
        task = streamer.spawn()
        try:
            await task.wait()
        finally:
            task.cancel()
        if isinstance(task.exception, BerthError):
            raise task.exception
        if task.exception is not None:
            raise BackendError(f"Log stream of {self._name} failed: {task.exception}") from task.exception
