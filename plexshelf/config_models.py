#!/usr/bin/env python3
"""
PlexShelf Configuration Models and Validation

This module contains all Pydantic configuration models and the configuration
loading logic for PlexShelf. Each component gets its own model, the models are
composed into a single AppConfig, and ConfigurationValidator merges file-based
settings with environment variable overrides before validating the result.

**Why Pydantic for Configuration?**
    A missing Plex token or a malformed server URL should stop the service at
    startup with a clear message, not surface later as an obscure HTTP error in
    the middle of a sync. Pydantic gives us type conversion, constraints and
    readable error locations for free.

Classes:
    Configuration Models:
        PlexConfig: Plex Media Server connection and normalization settings
        DatabaseConfig: SQLite document store configuration
        SyncConfig: Library synchronization limits
        AuthConfig: JWT authentication settings
        ServerConfig: FastAPI web server and logging configuration
        AppConfig: Top-level application configuration

    Validation:
        ConfigurationValidator: Configuration loading and validation

    Project: PlexShelf
    Version: 1.0.0
    License: MIT
"""

import os
import json
import secrets
from pathlib import Path
from typing import Dict, Any, List
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ConfigDict, ValidationError, field_validator

from .utils import get_logger, VALID_LOG_LEVELS


# ==================== PLEX CONFIGURATION ====================

class PlexConfig(BaseModel):
    """
    Configuration model for the Plex Media Server connection.

    Holds everything the library fetcher needs: where the server lives, the
    token used to authenticate every request, how long a single request may
    take and which audio languages are kept when summarizing audio streams.

    Attributes:
        server_url (str): Plex server URL (required, http/https, trailing slash removed)
        token (str): X-Plex-Token used on every request (required)
        client_identifier (str): Value sent as X-Plex-Client-Identifier
        request_timeout_seconds (float): Upper bound for a single request
        max_concurrent_requests (int): Maximum detail fetches in flight at once
        audio_languages (List[str]): Language codes kept in audio stream summaries

    Example:
        ```python
        config = PlexConfig(
            server_url="http://192.168.1.20:32400/",
            token="abc123",
            audio_languages=["eng", "ita", "fra"]
        )
        config.server_url  # "http://192.168.1.20:32400"
        ```
    """
    model_config = ConfigDict(
        extra='forbid',
        str_strip_whitespace=True
    )

    server_url: str = Field(..., description="Plex server URL")
    token: str = Field(..., description="Plex authentication token")

    client_identifier: str = Field(default="PlexShelf")
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=300)
    max_concurrent_requests: int = Field(default=10, ge=1, le=100)
    audio_languages: List[str] = Field(default_factory=lambda: ["eng", "ita"])

    # noinspection PyDecorator
    @field_validator('server_url')
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """
        Validate and normalize the Plex server URL.

        Args:
            v (str): The server URL to validate

        Returns:
            str: URL without trailing slashes

        Raises:
            ValueError: If URL is empty, malformed or not http/https
        """
        if not v:
            raise ValueError("Plex server URL cannot be empty")

        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid Plex server URL format: {v}")

        if parsed.scheme not in ['http', 'https']:
            raise ValueError(f"Plex server URL must use http or https: {v}")

        return v.rstrip('/')

    # noinspection PyDecorator
    @field_validator('token', 'client_identifier')
    @classmethod
    def validate_required_strings(cls, v: str) -> str:
        """Reject empty or whitespace-only values."""
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    # noinspection PyDecorator
    @field_validator('audio_languages')
    @classmethod
    def validate_audio_languages(cls, v: List[str]) -> List[str]:
        """Lower-case language codes and drop blanks and duplicates."""
        languages = []
        for code in v:
            code = code.strip().lower()
            if code and code not in languages:
                languages.append(code)
        return languages


# ==================== DATABASE CONFIGURATION ====================

class DatabaseConfig(BaseModel):
    """
    SQLite document store configuration.

    The database path is validated eagerly: the parent directory is created if
    needed and must be writable, so a bad volume mount fails at startup.

    Attributes:
        path (str): File path of the SQLite database
        wal_mode (bool): Enable WAL journaling
    """
    model_config = ConfigDict(extra='forbid')

    path: str = Field(default="/app/data/plexshelf.db")
    wal_mode: bool = Field(default=True)

    # noinspection PyDecorator
    @field_validator('path')
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """
        Validate database path and ensure parent directory is writable.

        Args:
            v (str): Database file path to validate

        Returns:
            str: Validated database path

        Raises:
            ValueError: If path is empty or parent directory isn't writable
        """
        if not v:
            raise ValueError("Database path cannot be empty")

        path = Path(v)
        parent_dir = path.parent

        try:
            parent_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ValueError(f"Cannot create database directory {parent_dir}: {e}")

        if not os.access(parent_dir, os.W_OK):
            raise ValueError(f"No write permission for database directory: {parent_dir}")

        return str(path)


# ==================== SYNC CONFIGURATION ====================

class SyncConfig(BaseModel):
    """
    Library synchronization settings.

    Attributes:
        timeout_seconds (float): Upper bound on a whole sync run (fetch and reconcile)
        history_limit (int): Number of sync runs returned by the history endpoint
    """
    model_config = ConfigDict(extra='forbid')

    timeout_seconds: float = Field(default=900.0, gt=0, le=86400)
    history_limit: int = Field(default=50, ge=1, le=1000)


# ==================== AUTH CONFIGURATION ====================

class AuthConfig(BaseModel):
    """
    JWT authentication settings.

    When no secret is configured a random one is generated, which means issued
    tokens do not survive a restart. ConfigurationValidator reports that case
    as a warning.

    Attributes:
        jwt_secret (str): HMAC secret used to sign access tokens
        jwt_algorithm (str): JWT signing algorithm
        access_token_expire_minutes (int): Lifetime of an access token
        allow_registration (bool): Whether new accounts may be created over the API
    """
    model_config = ConfigDict(extra='forbid')

    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24, ge=1, le=60 * 24 * 30)
    allow_registration: bool = Field(default=True)

    # noinspection PyDecorator
    @field_validator('jwt_algorithm')
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Only HMAC algorithms are usable with a shared secret."""
        v = v.upper()
        if v not in ('HS256', 'HS384', 'HS512'):
            raise ValueError(f"Unsupported JWT algorithm: {v}")
        return v


# ==================== SERVER CONFIGURATION ====================

class ServerConfig(BaseModel):
    """
    FastAPI web server configuration.

    Attributes:
        host (str): IP address to bind to ("0.0.0.0" for all interfaces)
        port (int): TCP port to listen on (1024-65535)
        log_level (str): Python logging level
        log_dir (str): Directory for log files
    """
    model_config = ConfigDict(extra='forbid')

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8085, ge=1024, le=65535)
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="/app/logs")

    # noinspection PyDecorator
    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate logging level against Python's standard levels.

        Args:
            v (str): Log level string (case insensitive)

        Returns:
            str: Uppercase log level string

        Raises:
            ValueError: If log level is not recognized
        """
        v = v.upper()
        if v not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level. Must be one of: {VALID_LOG_LEVELS}")
        return v


# ==================== TOP-LEVEL CONFIGURATION ====================

class AppConfig(BaseModel):
    """
    Top-level application configuration that combines all sub-configurations.

    Only the Plex section is required; the service cannot do anything useful
    without a server to read from. Every other section has defaults.

    Attributes:
        plex (PlexConfig): Plex server connection settings (required)
        database (DatabaseConfig): SQLite settings
        sync (SyncConfig): Synchronization limits
        auth (AuthConfig): Authentication settings
        server (ServerConfig): Web server settings

    Example:
        ```python
        config = AppConfig(
            plex=PlexConfig(server_url="http://localhost:32400", token="abc")
        )
        ```
    """
    model_config = ConfigDict(extra='forbid')

    plex: PlexConfig

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


# ==================== CONFIGURATION VALIDATION ====================

class ConfigurationValidator:
    """
    Configuration loader with environment variable support.

    **The Validation Process:**
        1. Load base configuration from a JSON or YAML file (optional)
        2. Apply environment variable overrides
        3. Build the Pydantic models (automatic validation)
        4. Perform additional checks that produce warnings
        5. Report errors and warnings, exiting on errors

    Errors are collected rather than raised one at a time so an operator can
    fix every problem in one pass.

    Attributes:
        logger (logging.Logger): Logger for reporting validation progress
        errors (List[str]): Validation errors that prevent startup
        warnings (List[str]): Validation warnings that don't prevent startup

    Example:
        ```python
        validator = ConfigurationValidator()
        config = validator.load_and_validate_config("/app/config/config.yaml")
        ```
    """

    # Environment variable -> nested config path
    ENV_MAPPINGS = {
        'PLEX_URL': ['plex', 'server_url'],
        'PLEX_TOKEN': ['plex', 'token'],
        'PLEX_CLIENT_IDENTIFIER': ['plex', 'client_identifier'],
        'PLEX_TIMEOUT': ['plex', 'request_timeout_seconds'],
        'PLEX_MAX_CONCURRENT_REQUESTS': ['plex', 'max_concurrent_requests'],
        'PLEX_AUDIO_LANGUAGES': ['plex', 'audio_languages'],

        'DATABASE_PATH': ['database', 'path'],
        'DATABASE_WAL_MODE': ['database', 'wal_mode'],

        'SYNC_TIMEOUT_SECONDS': ['sync', 'timeout_seconds'],

        'JWT_SECRET_KEY': ['auth', 'jwt_secret'],
        'ACCESS_TOKEN_EXPIRE_MINUTES': ['auth', 'access_token_expire_minutes'],
        'ALLOW_REGISTRATION': ['auth', 'allow_registration'],

        'LOG_LEVEL': ['server', 'log_level'],
        'LOG_DIR': ['server', 'log_dir'],
        'HOST': ['server', 'host'],
        'PORT': ['server', 'port'],
    }

    INT_VARIABLES = {'PORT', 'PLEX_MAX_CONCURRENT_REQUESTS', 'ACCESS_TOKEN_EXPIRE_MINUTES'}
    FLOAT_VARIABLES = {'PLEX_TIMEOUT', 'SYNC_TIMEOUT_SECONDS'}
    BOOL_VARIABLES = {'DATABASE_WAL_MODE', 'ALLOW_REGISTRATION'}
    LIST_VARIABLES = {'PLEX_AUDIO_LANGUAGES'}

    def __init__(self):
        self.logger = get_logger("plexshelf.config")
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def load_and_validate_config(self, config_path: str = "/app/config/config.yaml") -> AppConfig:
        """
        Load configuration from file and environment, then validate.

        Args:
            config_path (str): Path to JSON or YAML configuration file. A missing
                file is not an error; environment variables may supply everything.

        Returns:
            AppConfig: Fully validated application configuration

        Raises:
            SystemExit: If validation fails with errors
        """
        try:
            self.logger.info(f"Loading configuration from {config_path}")

            config_data = self._load_config_file(config_path)
            self._apply_env_overrides(config_data)

            config = AppConfig(**config_data)

            self._validate_auth_config(config.auth, config_data)
            self._validate_plex_config(config.plex)

            self._report_validation_results()

            self.logger.info("Configuration loaded and validated successfully")
            return config

        except ValidationError as e:
            self.logger.error("Configuration model validation failed:")
            for error in e.errors():
                field_path = " -> ".join(str(x) for x in error['loc'])
                self.logger.error(f"  {field_path}: {error['msg']}")
            raise SystemExit(1)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            self.logger.error(f"Configuration validation failed: {e}")
            raise SystemExit(1)

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """
        Load configuration data from JSON or YAML file.

        The format is picked from the file extension.

        Args:
            config_path (str): Path to configuration file

        Returns:
            Dict[str, Any]: Configuration data, empty when the file does not exist
        """
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.endswith('.yaml') or config_path.endswith('.yml'):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f) or {}
        except FileNotFoundError:
            self.logger.warning(f"Configuration file not found: {config_path}, using defaults")
            return {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            self.errors.append(f"Invalid configuration file format: {e}")
            raise

        if not isinstance(data, dict):
            raise yaml.YAMLError(f"Configuration root must be a mapping, got {type(data).__name__}")
        return data

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> None:
        """
        Apply environment variable overrides to configuration data.

        Values are converted to the type the target field expects; a value
        that cannot be converted is skipped with a warning so the file value
        (or default) still applies.

        Args:
            config_data (Dict[str, Any]): Configuration data to modify in place
        """
        for env_var, path in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if not value:
                continue

            current = config_data
            for key in path[:-1]:
                if not isinstance(current.get(key), dict):
                    current[key] = {}
                current = current[key]

            if env_var in self.INT_VARIABLES:
                try:
                    value = int(value)
                except ValueError:
                    self.logger.warning(f"Invalid {env_var} value '{value}', skipping override")
                    continue
            elif env_var in self.FLOAT_VARIABLES:
                try:
                    value = float(value)
                except ValueError:
                    self.logger.warning(f"Invalid {env_var} value '{value}', skipping override")
                    continue
            elif env_var in self.BOOL_VARIABLES:
                value = value.lower() in ('true', '1', 'yes', 'on')
            elif env_var in self.LIST_VARIABLES:
                value = [part.strip() for part in value.split(',') if part.strip()]

            current[path[-1]] = value
            self.logger.debug(f"Applied environment override: {env_var}")

    def _validate_plex_config(self, plex_config: PlexConfig) -> None:
        """Warn about settings that are valid but probably unintended."""
        if not plex_config.audio_languages:
            self.warnings.append("No audio languages configured; audio stream summaries will be empty")
        if plex_config.server_url.startswith('http://') and plex_config.token:
            self.warnings.append("Plex token will be sent over plain HTTP; use https if the server is not on a trusted network")

    def _validate_auth_config(self, auth_config: AuthConfig, config_data: Dict[str, Any]) -> None:
        """Flag a generated JWT secret, since tokens will not survive a restart."""
        if not config_data.get('auth', {}).get('jwt_secret'):
            self.warnings.append(
                "No JWT secret configured; a random secret was generated and tokens "
                "will be invalidated on restart (set JWT_SECRET_KEY)"
            )
        elif len(auth_config.jwt_secret) < 16:
            self.warnings.append("JWT secret is shorter than 16 characters")

    def _report_validation_results(self) -> None:
        """
        Report validation results and exit if there are errors.

        Raises:
            SystemExit: If any validation errors occurred
        """
        if self.warnings:
            self.logger.warning("Configuration warnings:")
            for warning in self.warnings:
                self.logger.warning(f"  - {warning}")

        if self.errors:
            self.logger.error("Configuration errors:")
            for error in self.errors:
                self.logger.error(f"  - {error}")
            raise SystemExit(1)
