"""
Berth project model.

A Project holds the declared service configurations and the shared runtime
Context. Services are created lazily and cached; creating a Service object
never creates containers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from .config_manager import BerthConfig, LabelKeys, ServiceConfig
from .logging_config import get_logger
from .registry import CredentialStore
from .runtime_client import RuntimeClient

if TYPE_CHECKING:
    from .container import ContainerHandle
    from .log_streamer import LogSink

logger = get_logger(__name__)

SERVICE_MODE_PREFIX = "service:"


class RelationshipKind(str, Enum):
    """How a service shares with the service it depends on."""
    LINK = "link"
    IPC_NAMESPACE = "ipc"
    NET_NAMESPACE = "net"


@dataclass(frozen=True)
class ServiceRelationship:
    """A declared dependency on another service."""
    target: str
    kind: RelationshipKind
    alias: str = ""


@dataclass
class Context:
    """Settings and collaborators shared by every service of a project."""
    client: RuntimeClient
    project_name: str
    timeout: int = 10
    log: bool = True
    credential_store: CredentialStore = field(default_factory=CredentialStore)
    labels: LabelKeys = field(default_factory=LabelKeys)
    logger_factory: Optional[Callable[[str], "LogSink"]] = None
    strict_dependencies: bool = False


def parse_relationships(config: ServiceConfig) -> List[ServiceRelationship]:
    """
    Derive the ordered relationship list from a service configuration.

    Links come first in declaration order, then the IPC and network
    namespace relationships.
    """
    relationships = []

    for link in config.links:
        target, _, alias = link.partition(":")
        relationships.append(ServiceRelationship(target, RelationshipKind.LINK, alias or target))

    if config.ipc and config.ipc.startswith(SERVICE_MODE_PREFIX):
        target = config.ipc[len(SERVICE_MODE_PREFIX):]
        relationships.append(ServiceRelationship(target, RelationshipKind.IPC_NAMESPACE, target))

    if config.network_mode and config.network_mode.startswith(SERVICE_MODE_PREFIX):
        target = config.network_mode[len(SERVICE_MODE_PREFIX):]
        relationships.append(ServiceRelationship(target, RelationshipKind.NET_NAMESPACE, target))

    return relationships


class Service:
    """A named unit of desired configuration with zero or more containers."""

    def __init__(self, name: str, config: ServiceConfig, project: "Project"):
        self.name = name
        self.config = config
        self.project = project

    @property
    def context(self) -> Context:
        return self.project.context

    def relationships(self) -> List[ServiceRelationship]:
        return parse_relationships(self.config)

    def container_name(self, number: int = 1) -> str:
        """Deterministic container name for the n-th instance."""
        return f"{self.project.name}_{self.name}_{number}"

    def container(self, number: int = 1) -> "ContainerHandle":
        from .container import ContainerHandle
        return ContainerHandle(self.container_name(number), self)

    def ownership_labels(self) -> Dict[str, str]:
        """Labels identifying containers that belong to this service."""
        labels = self.context.labels
        return {
            labels.project: self.project.name,
            labels.service: self.name,
        }

    def containers(self) -> List["ContainerHandle"]:
        """
        Handles for the containers of this service that currently exist.

        Sorted by container name.
        """
        from .container import ContainerHandle

        existing = self.context.client.list_containers(self.ownership_labels())
        names = sorted({c.name for c in existing})
        return [ContainerHandle(name, self) for name in names]


class Project:
    """Declared services plus the shared runtime context."""

    def __init__(self, configs: Dict[str, ServiceConfig], context: Context):
        self.configs = dict(configs)
        self.context = context
        self._services: Dict[str, Service] = {}

    @property
    def name(self) -> str:
        return self.context.project_name

    @classmethod
    def from_config(cls, config: BerthConfig, client: RuntimeClient,
                    credential_store: Optional[CredentialStore] = None,
                    logger_factory: Optional[Callable[[str], "LogSink"]] = None) -> "Project":
        """Build a project from a loaded configuration."""
        if credential_store is None:
            credential_store = CredentialStore.load(config.docker.config_path)

        context = Context(
            client=client,
            project_name=config.project.name,
            timeout=config.project.timeout,
            log=config.project.log,
            credential_store=credential_store,
            labels=config.labels,
            logger_factory=logger_factory,
            strict_dependencies=config.project.strict_dependencies,
        )
        return cls(config.services, context)

    def create_service(self, name: str) -> Service:
        """
        Return the Service object for a declared service, creating it if needed.

        Raises:
            KeyError: If the service is not declared
        """
        if name not in self._services:
            if name not in self.configs:
                raise KeyError(f"Service '{name}' is not declared in project '{self.name}'")
            self._services[name] = Service(name, self.configs[name], self)
            logger.debug(f"Created service object '{name}'")
        return self._services[name]
