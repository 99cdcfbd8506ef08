"""Configuration types for the gateway.

Two layers live here:

* ``GatewaySettings`` - process settings read from environment variables
  with the TUNNELGATE_ prefix (or a ``.env`` file). Example:
  TUNNELGATE_TUNNEL_DOMAIN=tunnels.example.org sets the probe domain.
* ``Configuration`` - the persisted YAML document holding admin credentials,
  users and their tokens, server binding and the debug flag. It is owned by
  ``ConfigStore`` and replaced wholesale on every reload.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 7002
DEFAULT_HANDLER_PATH = "/handler"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load the raw configuration mapping from a YAML file.

    Args:
        path: Path to the configuration file.

    Returns:
        Configuration dictionary (empty when the file is empty)

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax,
            or a top level that is not a mapping
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def dump_config(data: dict[str, Any]) -> str:
    """Serialize a configuration mapping to YAML.

    Key order is preserved and long lines are never folded, so dumping the
    same mapping twice yields identical text.
    """
    return yaml.safe_dump(
        data,
        indent=2,
        width=float("inf"),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


class AdminCredentials(BaseModel):
    """Credentials gating the admin API and introspection endpoints."""

    model_config = ConfigDict(extra="allow")

    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)


class UserRecord(BaseModel):
    """A tunnel user: shared-secret token plus routing subdomain."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    token: str = Field(repr=False)
    subdomain: str | None = None
    last_login: datetime | None = Field(default=None, alias="lastLogin")
    last_ip: str | None = Field(default=None, alias="lastIp")

    def resolved_subdomain(self, user: str) -> str:
        """Subdomain this user may register, defaulting to the user id."""
        return self.subdomain or user


class ServerSettings(BaseModel):
    """Network binding and the control-event endpoint path."""

    model_config = ConfigDict(extra="allow")

    port: int = DEFAULT_PORT
    path: str = DEFAULT_HANDLER_PATH


class Configuration(BaseModel):
    """The persisted configuration document.

    Unknown keys are kept so that fields written by other tools survive a
    load/save cycle.
    """

    model_config = ConfigDict(extra="allow")

    admin: AdminCredentials | None = None
    users: dict[str, UserRecord] = Field(default_factory=dict)
    server: ServerSettings = Field(default_factory=ServerSettings)
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Validate a raw mapping.

        ``users: null`` and ``server: null`` are treated as absent, which is
        what a hand-edited file with an emptied section looks like.
        """
        data = dict(data)
        for key in ("users", "server", "admin"):
            if key in data and data[key] is None:
                del data[key]
        return cls.model_validate(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain mapping for YAML serialization."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def subdomain_for(self, user: str) -> str | None:
        """Resolved subdomain for a user, or None when the user is unknown."""
        record = self.users.get(user)
        if record is None:
            return None
        return record.resolved_subdomain(user)

    def subdomains(self) -> dict[str, str]:
        """Mapping of every user id to its resolved subdomain."""
        return {user: record.resolved_subdomain(user) for user, record in self.users.items()}

    @property
    def admin_enabled(self) -> bool:
        return self.admin is not None and self.admin.configured


def parse_configuration(data: dict[str, Any]) -> Configuration:
    """Validate a raw mapping, converting pydantic errors to ValueError."""
    try:
        return Configuration.from_dict(data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


class GatewaySettings(BaseSettings):
    """Process-level settings.

    All settings can be overridden via environment variables:
    - TUNNELGATE_CONFIG_PATH (or CONFIG_PATH): path to the YAML config file
    - TUNNELGATE_TUNNEL_DOMAIN (or TUNNEL_DOMAIN): base domain for probe URLs
    - TUNNELGATE_PROBE_TIMEOUT: per-probe timeout in seconds
    - TUNNELGATE_RELOAD_DEBOUNCE: quiet period before a config reload
    - TUNNELGATE_BIND_HOST: interface the HTTP server listens on
    """

    model_config = SettingsConfigDict(
        env_prefix="TUNNELGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: str = Field(
        default="./config.yaml",
        validation_alias=AliasChoices("TUNNELGATE_CONFIG_PATH", "CONFIG_PATH", "config_path"),
        description="Path to the persisted YAML configuration.",
    )
    tunnel_domain: str = Field(
        default="example.com",
        validation_alias=AliasChoices("TUNNELGATE_TUNNEL_DOMAIN", "TUNNEL_DOMAIN", "tunnel_domain"),
        description="Base domain used to derive https://<subdomain>.<domain> probe URLs.",
    )
    probe_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for a single liveness probe (seconds).",
    )
    reload_debounce: float = Field(
        default=1.0,
        ge=0,
        description="Quiet period after a config file change before reloading (seconds).",
    )
    bind_host: str = Field(
        default="0.0.0.0",
        description="Interface the HTTP server binds to.",
    )
