# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the pull mirror service.

Two kinds of configuration exist:

- The **mirrors file** (YAML) lists origin/target pairs.  It is re-read on
  every reload signal.  The default location follows the XDG Base
  Directory Specification: ``$XDG_CONFIG_HOME/pull-mirror/mirrors.yaml``.
  ``!env`` tags resolve values from environment variables, which keeps
  credentials embedded in URLs out of the file::

      repositories:
        - origin: https://github.com/yakshaving-art/git-pull-mirror.git
          target: git@gitlab.com:yakshaving.art/git-pull-mirror.git
        - origin: !env PRIVATE_ORIGIN_URL
          target: git@gitlab.com:other-group/other-repo

- **Server options** come from command-line flags (with environment
  defaults) and are fixed for the lifetime of the process.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from platformdirs import user_config_path

from pullmirror.giturl import GitURL, InvalidURLError, parse
from pullmirror.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "pull-mirror"


def get_config_path() -> Path:
    """Return the default mirrors file path.

    Returns:
        ``$XDG_CONFIG_HOME/pull-mirror/mirrors.yaml``.
    """
    return user_config_path(_APP_NAME) / "mirrors.yaml"


def get_dotenv_path() -> Path:
    """Return the default ``.env`` file path inside the XDG config directory.

    Returns:
        ``$XDG_CONFIG_HOME/pull-mirror/.env``.
    """
    return user_config_path(_APP_NAME) / ".env"


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is unset/empty.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name) or None
    if value is None:
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Mirrors file
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RepositoryConfig:
    """One origin/target pair.

    Attributes:
        origin: Origin URL as written in the mirrors file.
        target: Target URL as written in the mirrors file.
        origin_url: Parsed origin descriptor.
        target_url: Parsed target descriptor.
    """

    origin: str = field(repr=False)
    target: str = field(repr=False)
    origin_url: GitURL
    target_url: GitURL

    @classmethod
    def from_urls(cls, origin: str, target: str) -> "RepositoryConfig":
        """Parse both URLs into a config entry.

        Raises:
            ConfigError: If either URL cannot be parsed.
        """
        try:
            origin_url = parse(origin)
        except InvalidURLError as e:
            raise ConfigError(
                f"failed to parse origin url {origin}: {e}"
            ) from e
        try:
            target_url = parse(target)
        except InvalidURLError as e:
            raise ConfigError(
                f"failed to parse target url {target}: {e}"
            ) from e

        # Credentials embedded in URLs must not leak through logs
        SecretFilter.register_secret(origin_url.password)
        SecretFilter.register_secret(target_url.password)

        return cls(
            origin=origin,
            target=target,
            origin_url=origin_url,
            target_url=target_url,
        )


@dataclass(frozen=True)
class MirrorConfig:
    """Snapshot of the mirrors file.

    Attributes:
        repositories: Configured pairs, in file order.
    """

    repositories: tuple[RepositoryConfig, ...] = ()

    def __post_init__(self) -> None:
        """Reject duplicate origins.

        Raises:
            ConfigError: If two entries share an origin key.
        """
        seen: dict[str, str] = {}
        for repo in self.repositories:
            key = repo.origin_url.to_key()
            if key in seen:
                raise ConfigError(
                    f"origin {repo.origin} duplicates {seen[key]} "
                    f"(both map to {key})"
                )
            seen[key] = repo.origin

    @classmethod
    def from_yaml(cls, config_path: Path) -> "MirrorConfig":
        """Load the mirrors file.

        Args:
            config_path: Path to the YAML file.

        Returns:
            MirrorConfig instance.

        Raises:
            ConfigError: If the file cannot be read or parsed, or any URL
                is invalid.
        """
        logger.debug("reading configuration file %s", config_path)
        try:
            with open(config_path) as f:
                raw = yaml.load(f, Loader=_make_loader())
        except OSError as e:
            raise ConfigError(
                f"failed reading configuration file {config_path}: {e}"
            ) from e
        except yaml.YAMLError as e:
            raise ConfigError(
                f"failed to parse configuration file {config_path}: {e}"
            ) from e

        # An empty file is a valid, empty configuration
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"configuration file must be a YAML mapping: {config_path}"
            )

        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: dict) -> "MirrorConfig":
        raw_repos = raw.get("repositories") or []
        if not isinstance(raw_repos, list):
            raise ConfigError("'repositories' must be a YAML list")

        repositories: list[RepositoryConfig] = []
        for index, entry in enumerate(raw_repos):
            if not isinstance(entry, dict):
                raise ConfigError(f"repositories[{index}] must be a mapping")
            origin = _raw_resolve(entry.get("origin"))
            target = _raw_resolve(entry.get("target"))
            if not origin:
                raise ConfigError(f"repositories[{index}]: origin is missing")
            if not target:
                raise ConfigError(f"repositories[{index}]: target is missing")
            repositories.append(RepositoryConfig.from_urls(origin, target))

        return cls(repositories=tuple(repositories))


def load_configuration(config_path: Path) -> MirrorConfig:
    """Load and validate the mirrors file.

    Args:
        config_path: Path to the YAML file.

    Returns:
        Parsed configuration.

    Raises:
        ConfigError: On any read, parse or validation failure.
    """
    return MirrorConfig.from_yaml(config_path)


# ---------------------------------------------------------------------------
# Server options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerOptions:
    """Process-wide options for the mirror server.

    Attributes:
        repositories_path: Root directory holding the local clones.
        git_timeout_seconds: Timeout applied to every git operation.
        ssh_private_key: Private key used for SSH remotes, if any.
        skip_webhooks_registration: Do not call the provider API.
        concurrency: Number of workers and capacity of the task queue.
        metrics_path: HTTP path serving the metrics.
    """

    repositories_path: Path = Path(".")
    git_timeout_seconds: int = 60
    ssh_private_key: Path | None = None
    skip_webhooks_registration: bool = False
    concurrency: int = 4
    metrics_path: str = "/metrics"

    def __post_init__(self) -> None:
        """Validate options.

        Raises:
            ConfigError: If any option is invalid.
        """
        if self.git_timeout_seconds < 1:
            raise ConfigError(
                f"Invalid git timeout {self.git_timeout_seconds}, "
                "it should be 1 or higher"
            )
        if self.concurrency < 1:
            raise ConfigError(
                f"Invalid concurrency {self.concurrency}, "
                "it should be 1 or higher"
            )
        if not self.metrics_path.startswith("/"):
            raise ConfigError(
                f"Invalid metrics path {self.metrics_path!r}, "
                "it should start with /"
            )
        if not self.repositories_path.is_dir():
            raise ConfigError(
                f"repositories path {self.repositories_path} "
                "is not an accessible directory"
            )
        key = self.ssh_private_key
        if key is not None and not key.is_file():
            raise ConfigError(
                f"SSH key {self.ssh_private_key} is not accessible"
            )


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split a ``host:port`` listen address.

    An empty host (``:9092``) binds all interfaces.

    Raises:
        ConfigError: If the port is missing or not a number.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"Invalid listen address {address!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)
