"""
Image references and registry credentials for the lazy pull path.

Reference parsing, index resolution and credential lookup are the docker
SDK's, so inline "auths" entries, "credsStore" and "credHelpers" all behave
as they do for the docker CLI.
"""

import logging
import os
from typing import Any, Dict, Optional

from docker import auth as docker_auth
from docker.utils import parse_repository_tag

logger = logging.getLogger(__name__)

DEFAULT_TAG = "latest"


def with_default_tag(image: str) -> str:
    """
    Return the reference with the default tag substituted when none is given.

    >>> with_default_tag("localhost:5000/app")
    'localhost:5000/app:latest'
    >>> with_default_tag("app@sha256:abc")
    'app@sha256:abc'
    """
    repository, tag = parse_repository_tag(image)
    if tag:
        return image
    return f"{repository}:{DEFAULT_TAG}"


def resolve_index(image: str) -> str:
    """Return the registry host an image reference lives on."""
    repository, _ = parse_repository_tag(image)
    index, _ = docker_auth.resolve_repository_name(repository)
    return index


class CredentialStore:
    """
    Registry credentials from a Docker client config file.

    Example:
        store = CredentialStore.load()
        auth = store.resolve("registry.example.com")
    """

    def __init__(self, config: Optional[docker_auth.AuthConfig] = None):
        self._config = config if config is not None else docker_auth.AuthConfig({})

    def __len__(self) -> int:
        return len(self._config.auths)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "CredentialStore":
        """
        Load credentials from a config.json file.

        Without a path the SDK's lookup applies ($DOCKER_CONFIG, then
        ~/.docker/config.json). An explicit path that does not exist yields
        an empty store.
        """
        if path and not os.path.exists(path):
            logger.debug(f"No registry credentials at {path}")
            return cls()

        config = docker_auth.load_config(path)
        logger.debug(
            f"Loaded credentials for {len(config.auths)} registr(y/ies)"
            f"{' with credential store ' + config.creds_store if config.creds_store else ''}"
        )
        return cls(config)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialStore":
        """Build a store from the contents of a config.json file."""
        return cls(docker_auth.load_config(config_dict=dict(data)))

    def resolve(self, index: str) -> Optional[Dict[str, Any]]:
        """
        Return the auth config for a registry index, if any.

        Raises:
            DockerException: If a credential helper fails
        """
        return docker_auth.resolve_authconfig(self._config, index) or None
