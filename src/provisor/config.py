"""Run configuration for provisor.

Settings come from three places, later ones winning: built-in defaults, a
YAML configuration file (``~/.provisor/config.yml`` unless ``--config``
names another) and command line options.

Example ``config.yml``::

    max_retries: 5
    retry_delay: 2
    parallel: 20
    known_hosts: ~/.ssh/known_hosts
"""

import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .retry import RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".provisor" / "config.yml"


class ConfigError(ValueError):
    """Raised when a configuration file cannot be used."""


@dataclass
class RunConfig:
    """Settings for one ``provisor run``.

    Attributes:
        max_retries: Retries for transient step failures
        retry_delay: Delay before the first retry in seconds
        max_delay: Cap on the backoff delay in seconds
        backoff_factor: Multiplier applied to the delay per retry
        parallel: Hosts provisioned concurrently
        command_timeout: Seconds before a remote command is abandoned
        connect_timeout: Seconds allowed for an SSH handshake
        check_mode: Probe only, never apply
        known_hosts: Known hosts file, or None to skip host key checking
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    parallel: int = 10
    command_timeout: float = 300.0
    connect_timeout: float = 30.0
    check_mode: bool = False
    known_hosts: str | None = "~/.ssh/known_hosts"

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.parallel < 1:
            raise ConfigError("parallel must be >= 1")
        if self.retry_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be >= 0")

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.retry_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
        )

    def known_hosts_option(self) -> Any:
        """Value for ``SSHConfig.known_hosts``."""
        if self.known_hosts is None:
            return None
        path = Path(self.known_hosts).expanduser()
        return str(path) if path.exists() else ()

    def merged(self, **overrides: Any) -> "RunConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")
        return cls(**data)


def load_config(path: str | Path | None = None) -> RunConfig:
    """Load a RunConfig from YAML.

    A missing file at the default location yields the defaults; a missing
    file that was named explicitly is an error.

    Raises:
        ConfigError: If the file is missing, unreadable or has bad keys
    """
    explicit = path is not None
    config_path = Path(path).expanduser() if explicit else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Configuration file not found: {config_path}")
        return RunConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    logger.debug(f"Loaded configuration from {config_path}")
    try:
        return RunConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"{config_path}: {e}") from e
