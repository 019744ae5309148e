"""
Service dependency resolution.

Translates a service's relationships (links, shared IPC namespace, shared
network namespace) into a host-config patch, reading whatever containers the
target services currently have. Target containers are never created here.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .exceptions import DependencyCycleError, DependencyNotFoundError
from .logging_config import get_logger, log_with_context
from .project import RelationshipKind, Service, ServiceRelationship

logger = get_logger(__name__)

SHARE_NAMESPACE_PREFIX = "container:"


@dataclass
class HostConfigPatch:
    """The part of a host config controlled by service relationships."""
    links: List[str] = field(default_factory=list)
    ipc_mode: Optional[str] = None
    network_mode: Optional[str] = None
    skipped: List[str] = field(default_factory=list)

    def apply(self, host_config: Dict[str, Any]) -> Dict[str, Any]:
        """Write the patch into an engine-format host config dict."""
        host_config["Links"] = list(self.links)
        if self.ipc_mode is not None:
            host_config["IpcMode"] = self.ipc_mode
        if self.network_mode is not None:
            host_config["NetworkMode"] = self.network_mode
        return host_config


class DependencyResolver:
    """
    Resolves the relationships of one service against its project.

    Example:
        resolver = DependencyResolver(service)
        patch = resolver.populate(request["host_config"])
    """

    def __init__(self, service: Service):
        self._service = service

    @property
    def _project(self):
        return self._service.project

    def check_cycles(self) -> None:
        """
        Walk the relationship graph reachable from this service.

        Raises:
            DependencyCycleError: If a relationship path leads back to a
                service already on the path
        """
        configs = self._project.configs
        done: Set[str] = set()
        path: List[str] = [self._service.name]
        on_path: Set[str] = {self._service.name}
        stack = [iter(self._targets(self._service.name))]

        while stack:
            target = next(stack[-1], None)
            if target is None:
                stack.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue

            if target not in configs or target in done:
                continue
            if target in on_path:
                cycle = path[path.index(target):] + [target]
                raise DependencyCycleError(cycle)

            path.append(target)
            on_path.add(target)
            stack.append(iter(self._targets(target)))

    def _targets(self, name: str) -> List[str]:
        return [r.target for r in self._project.create_service(name).relationships()]

    def populate(self, host_config: Dict[str, Any]) -> HostConfigPatch:
        """
        Resolve all relationships and patch host_config in place.

        Args:
            host_config: Engine-format host config ("Links", "IpcMode", "NetworkMode")

        Returns:
            The applied HostConfigPatch

        Raises:
            DependencyCycleError: If relationships form a cycle
            DependencyNotFoundError: If a namespace relationship has no
                target container, or a target is undeclared in strict mode
        """
        self.check_cycles()

        patch = HostConfigPatch()
        links: Dict[str, str] = {}

        for relationship in self._service.relationships():
            if relationship.target not in self._project.configs:
                self._undeclared(relationship, patch)
                continue

            target = self._project.create_service(relationship.target)
            containers = target.containers()

            match relationship.kind:
                case RelationshipKind.LINK:
                    self._add_links(links, relationship, containers)
                case RelationshipKind.IPC_NAMESPACE:
                    patch.ipc_mode = self._share_namespace(relationship, containers, "IPC")
                case RelationshipKind.NET_NAMESPACE:
                    patch.network_mode = self._share_namespace(relationship, containers, "network")

        patch.links = [f"{name}:{key}" for key, name in links.items()]
        patch.apply(host_config)

        logger.debug(
            f"Resolved dependencies for '{self._service.name}': links={patch.links}, "
            f"ipc={patch.ipc_mode}, net={patch.network_mode}"
        )
        return patch

    def _undeclared(self, relationship: ServiceRelationship, patch: HostConfigPatch) -> None:
        if self._service.context.strict_dependencies:
            raise DependencyNotFoundError(
                self._service.name,
                relationship.target,
                f"Service '{self._service.name}' depends on '{relationship.target}' "
                f"which is not declared in the project"
            )

        patch.skipped.append(relationship.target)
        log_with_context(
            logger,
            logging.WARNING,
            f"Skipping undeclared dependency '{relationship.target}' of service '{self._service.name}'",
            service=self._service.name,
            target=relationship.target,
            kind=relationship.kind.value,
        )

    @staticmethod
    def _add_links(links: Dict[str, str], relationship: ServiceRelationship, containers) -> None:
        for container in containers:
            if relationship.alias not in links:
                links[relationship.alias] = container.name
            links[container.name] = container.name

    def _share_namespace(self, relationship: ServiceRelationship, containers, namespace: str) -> str:
        if not containers:
            raise DependencyNotFoundError(
                self._service.name,
                relationship.target,
                f"Failed to find a container of '{relationship.target}' to share the "
                f"{namespace} namespace of service '{self._service.name}' with"
            )

        container_id = containers[0].id()
        if container_id is None:
            # Removed between listing and lookup
            raise DependencyNotFoundError(self._service.name, relationship.target)
        return SHARE_NAMESPACE_PREFIX + container_id
