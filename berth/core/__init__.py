"""Core module initialization."""

from .config_manager import BerthConfig, ConfigManager, LabelKeys, ServiceConfig
from .logging_config import setup_logging, get_logger
from .exceptions import (
    BerthError,
    BackendError,
    ImageNotFoundError,
    ImagePullError,
    LogStreamError,
    DependencyError,
    DependencyNotFoundError,
    DependencyCycleError,
)
from .registry import CredentialStore
from .runtime_client import RuntimeClient, RuntimeContainer, DockerRuntimeClient
from .project import Context, Project, Service, ServiceRelationship, RelationshipKind
from .dependencies import DependencyResolver, HostConfigPatch
from .log_streamer import LogSink, LoggingSink, LogStreamer, LogTask
from .container import ContainerHandle, ContainerState

__all__ = [
    "BerthConfig",
    "ConfigManager",
    "LabelKeys",
    "ServiceConfig",
    "setup_logging",
    "get_logger",
    "BerthError",
    "BackendError",
    "ImageNotFoundError",
    "ImagePullError",
    "LogStreamError",
    "DependencyError",
    "DependencyNotFoundError",
    "DependencyCycleError",
    "CredentialStore",
    "RuntimeClient",
    "RuntimeContainer",
    "DockerRuntimeClient",
    "Context",
    "Project",
    "Service",
    "ServiceRelationship",
    "RelationshipKind",
    "DependencyResolver",
    "HostConfigPatch",
    "LogSink",
    "LoggingSink",
    "LogStreamer",
    "LogTask",
    "ContainerHandle",
    "ContainerState",
]
