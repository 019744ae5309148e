"""
Berth Exceptions.

Error taxonomy shared by the lifecycle, dependency and registry modules.
"""


class BerthError(Exception):
    """Base exception for all Berth errors."""

    pass


class BackendError(BerthError):
    """Raised when a container runtime call fails."""

    pass


class ImageNotFoundError(BackendError):
    """Raised when a container cannot be created because its image is missing locally."""

    def __init__(self, image: str, message: str = ""):
        self.image = image
        super().__init__(message or f"Image '{image}' not found")


class ImagePullError(BackendError):
    """Raised when pulling an image from its registry fails."""

    def __init__(self, image: str, message: str = ""):
        self.image = image
        super().__init__(message or f"Failed to pull image '{image}'")


class DependencyError(BerthError):
    """Base exception for service dependency resolution failures."""

    pass


class DependencyNotFoundError(DependencyError):
    """Raised when a required dependency has no container to share with."""

    def __init__(self, service: str, target: str, reason: str = ""):
        self.service = service
        self.target = target
        super().__init__(
            reason or f"Service '{service}' depends on '{target}' which has no existing container"
        )


class DependencyCycleError(DependencyError):
    """Raised when service relationships form a cycle."""

    def __init__(self, path):
        self.path = list(path)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.path)}")


class LogStreamError(BackendError):
    """Raised when a container log stream is malformed."""

    pass
