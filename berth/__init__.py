"""
Berth: container lifecycle for services of a multi-service project.

Creates, starts, stops, restarts and removes a service's containers on a
Docker-compatible engine, resolving links and shared namespaces first.
"""

__version__ = "0.1.0"

from .core.project import Project
from .core.container import ContainerHandle

__all__ = ["Project", "ContainerHandle", "__version__"]
