"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from oidcrp.core.errors import ConfigurationError

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".oidcrp"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_CONFIG_DIR / 'tokens.db'}"

# Environment variable prefix
ENV_PREFIX = "OIDCRP_"
ENV_CONFIG_PATH = f"{ENV_PREFIX}CONFIG"


@dataclass
class ServerSettings:
    """Server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        """Create ServerSettings from a dictionary."""
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 8080),
            debug=data.get("debug", False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
        }


@dataclass
class HandlerSettings:
    """Settings of the OIDC authentication handler."""

    idp: str = "oidc"
    callback_uri: str = "http://127.0.0.1:8080/oidc/callback"
    default_redirect: str = "/"
    default_connection: str | None = None
    pkce_enabled: bool = False
    userinfo_enabled: bool = True
    login_path: str = "/oidc/login"
    http_timeout: float = 10.0
    state_secret: str | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HandlerSettings:
        """Create HandlerSettings from a dictionary."""
        return cls(
            idp=data.get("idp", "oidc"),
            callback_uri=data.get("callback_uri", "http://127.0.0.1:8080/oidc/callback"),
            default_redirect=data.get("default_redirect", "/"),
            default_connection=data.get("default_connection"),
            pkce_enabled=data.get("pkce_enabled", False),
            userinfo_enabled=data.get("userinfo_enabled", True),
            login_path=data.get("login_path", "/oidc/login"),
            http_timeout=float(data.get("http_timeout", 10.0)),
            state_secret=data.get("state_secret"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "idp": self.idp,
            "callback_uri": self.callback_uri,
            "default_redirect": self.default_redirect,
            "default_connection": self.default_connection,
            "pkce_enabled": self.pkce_enabled,
            "userinfo_enabled": self.userinfo_enabled,
            "login_path": self.login_path,
            "http_timeout": self.http_timeout,
            "state_secret": self.state_secret,
        }


@dataclass
class StorageSettings:
    """Token storage settings."""

    database_url: str = DEFAULT_DATABASE_URL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageSettings:
        """Create StorageSettings from a dictionary."""
        return cls(database_url=data.get("database_url", DEFAULT_DATABASE_URL))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"database_url": self.database_url}


@dataclass
class AppConfig:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    handler: HandlerSettings = field(default_factory=HandlerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    connections: list[dict[str, Any]] = field(default_factory=list)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary.

        Raises:
            ConfigurationError: If a section has the wrong shape.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")
        for section in ("server", "handler", "storage"):
            if not isinstance(data.get(section) or {}, dict):
                raise ConfigurationError(f"Configuration section '{section}' must be a mapping")

        connections = data.get("connections") or []
        if not isinstance(connections, list) or not all(isinstance(c, dict) for c in connections):
            raise ConfigurationError("Configuration section 'connections' must be a list of mappings")

        return cls(
            server=ServerSettings.from_dict(data.get("server") or {}),
            handler=HandlerSettings.from_dict(data.get("handler") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
            connections=[dict(c) for c in connections],
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "server": self.server.to_dict(),
            "handler": self.handler.to_dict(),
            "storage": self.storage.to_dict(),
            "connections": self.connections,
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_config_path() -> Path:
    """Get the config file path from the environment or the default."""
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses ``OIDCRP_CONFIG`` or the
            default if not specified.

    Returns:
        AppConfig with merged settings.

    Raises:
        ConfigurationError: If the config file cannot be parsed.
    """
    # Start with defaults
    config = AppConfig()

    file_path = config_path or get_config_path()
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {file_path}: {e}") from e
        config = AppConfig.from_dict(data, config_path=file_path)

    # Server settings
    if os.environ.get(f"{ENV_PREFIX}HOST"):
        config.server.host = os.environ[f"{ENV_PREFIX}HOST"]

    if os.environ.get(f"{ENV_PREFIX}PORT"):
        config.server.port = _get_env_int(f"{ENV_PREFIX}PORT", config.server.port)

    config.server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", config.server.debug)

    # Handler settings
    handler = config.handler

    for name in ("idp", "callback_uri", "default_redirect", "default_connection", "login_path", "state_secret"):
        value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value:
            setattr(handler, name, value)

    handler.pkce_enabled = _get_env_bool(f"{ENV_PREFIX}PKCE_ENABLED", handler.pkce_enabled)
    handler.userinfo_enabled = _get_env_bool(f"{ENV_PREFIX}USERINFO_ENABLED", handler.userinfo_enabled)
    handler.http_timeout = _get_env_float(f"{ENV_PREFIX}HTTP_TIMEOUT", handler.http_timeout)

    # Storage settings
    if os.environ.get(f"{ENV_PREFIX}DATABASE_URL"):
        config.storage.database_url = os.environ[f"{ENV_PREFIX}DATABASE_URL"]

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# oidcrp Configuration File
# Environment variables override these settings (prefix: OIDCRP_)

server:
  host: "127.0.0.1"
  port: 8080
  debug: false

handler:
  # Identity provider name handed to the claims processor
  idp: "oidc"

  # Absolute URI registered at the IdP as redirect URI
  callback_uri: "https://localhost:8080/oidc/callback"

  # Where to go after login when no valid redirect was requested
  default_redirect: "/"

  # Connection used when the login request names none
  # default_connection: "demo"

  pkce_enabled: false
  userinfo_enabled: true
  login_path: "/oidc/login"

  # Seconds before token, userinfo and JWKS requests time out
  http_timeout: 10

  # Signs the state parameter; must be shared by all instances
  # state_secret: "change-me"

storage:
  # Defaults to ~/.oidcrp/tokens.db
  # database_url: "sqlite:////var/lib/oidcrp/tokens.db"

connections:
  - name: "demo"
    authorization_endpoint: "https://idp.example.com/auth"
    token_endpoint: "https://idp.example.com/token"
    userinfo_endpoint: "https://idp.example.com/userinfo"
    jwks_uri: "https://idp.example.com/jwks"
    issuer: "https://idp.example.com"
    client_id: "abc"
    client_secret: "secret"
    scopes: ["openid", "profile"]
    # additional_authorization_parameters: ["prompt=login"]
    # id_token_algorithm: "RS256"
"""
