"""
blobserve server configuration.

Values are layered, later sources winning: dataclass defaults, a YAML or
JSON config file, BLOBSERVE_* environment variables, then CLI flags.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigError
from .signing import generate_secret, load_secret

ENV_PREFIX = "BLOBSERVE_"
SECRET_ENV = "BLOBSERVE_SECRET"

# Keys accepted in config files besides the field names themselves
_FILE_ALIASES = {
    "secretPath": "secret_path",
    "logFile": "log_file",
    "maxUploadSize": "max_upload_size",
    "eventHistory": "event_history",
    "logLevel": "log_level",
}

LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class ServerConfig:
    """blobserve server configuration."""

    # Listen address
    host: str = "0.0.0.0"
    port: int = 8080

    # Storage root; uploads and presigned paths resolve beneath it
    path: str = "./data"

    # File holding the HMAC signing secret
    secret_path: Optional[str] = None

    # Object log, relative to the storage root unless absolute
    log_file: str = "_db"

    max_upload_size: int = 10 << 20
    event_history: int = 100
    log_level: str = "info"

    @property
    def log_path(self) -> Path:
        return Path(self.path) / self.log_file

    @classmethod
    def from_file(cls, path: str) -> "ServerConfig":
        """Load configuration from a YAML (or JSON) file."""
        import yaml
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config '{path}' due to '{e}'") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config '{path}' must be a mapping")
        return cls().merged(**_normalize_keys(data, source=path))

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Apply BLOBSERVE_HOST, BLOBSERVE_PORT, ... overrides."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(self):
            value = environ.get(ENV_PREFIX + f.name.upper())
            if value is not None and value != "":
                overrides[f.name] = value
        return self.merged(**overrides)

    def merged(self, **overrides) -> "ServerConfig":
        """Copy with every non-None override applied and coerced to its field type."""
        values = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in _FIELD_NAMES:
                raise ConfigError(f"Unknown config key: {key}")
            values[key] = _coerce(key, value, int if key in _INT_FIELDS else str)
        return replace(self, **values)

    def validate(self) -> None:
        """Validate configuration."""
        if not self.path:
            raise ConfigError("path is required")
        if not self.log_file:
            raise ConfigError("log_file is required")
        if self.port < 1 or self.port > 65535:
            raise ConfigError("port must be between 1 and 65535")
        if self.max_upload_size < 1:
            raise ConfigError("max_upload_size must be positive")
        if self.event_history < 1:
            raise ConfigError("event_history must be positive")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")

    def load_secret(
        self,
        secret_file: Optional[str] = None,
        generate: bool = False,
        environ: Optional[Mapping[str, str]] = None,
    ) -> bytes:
        """
        Resolve the signing secret.

        Order: generate, then `secret_file`, then secret_path, then the
        BLOBSERVE_SECRET environment variable.

        Raises:
            ConfigError: no source is configured, or the secret is empty
        """
        if generate:
            return generate_secret()

        environ = os.environ if environ is None else environ
        path = secret_file or self.secret_path
        if path:
            try:
                secret = load_secret(path)
            except OSError as e:
                raise ConfigError(f"Failed to read secret path '{path}' due to '{e}'") from e
        elif environ.get(SECRET_ENV):
            secret = environ[SECRET_ENV].encode("utf-8")
        else:
            raise ConfigError(
                f"No signing secret configured; use --secret, secret_path, "
                f"{SECRET_ENV} or --generate-secret"
            )

        if not secret:
            raise ConfigError("Signing secret is empty")
        return secret


_INT_FIELDS = {"port", "max_upload_size", "event_history"}


def _coerce(key: str, value, kind):
    if kind is int:
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from e
    if key == "log_level":
        return str(value).lower()
    return str(value)


def _normalize_keys(data: Dict, source: str) -> Dict:
    result = {}
    for key, value in data.items():
        name = _FILE_ALIASES.get(key, key)
        if name not in _FIELD_NAMES:
            raise ConfigError(f"Unknown key '{key}' in config '{source}'")
        result[name] = value
    return result


_FIELD_NAMES = {f.name for f in fields(ServerConfig)}


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> ServerConfig:
    """
    Build and validate the effective configuration.

    Args:
        config_path: Optional YAML/JSON config file
        environ: Environment to read BLOBSERVE_* overrides from
        **overrides: CLI flag values; None means "not given"
    """
    cfg = ServerConfig.from_file(config_path) if config_path else ServerConfig()
    cfg = cfg.with_env(environ).merged(**overrides)
    cfg.validate()
    return cfg
