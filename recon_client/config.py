"""
Configuration Management for the Reconciliation API Client.

This module handles client configuration including the server URL, request
timeout, credential storage and logging, with support for configuration
files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from recon_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ('auto', 'keyring', 'file', 'memory')
LOG_FORMATS = ('standard', 'json', 'detailed')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _default_config_dir() -> Path:
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / 'recon-client'
    return Path.home() / '.config' / 'recon-client'


class ClientConfiguration:
    """
    Configuration manager for the Reconciliation API Client.

    Supports configuration from:
    1. Overrides set in-process, e.g. from command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'RECON_CLIENT_SERVER_URL': ('server', 'url'),
        'RECON_CLIENT_TIMEOUT': ('server', 'timeout'),
        'RECON_CLIENT_STORAGE_BACKEND': ('auth', 'storage_backend'),
        'RECON_CLIENT_STORAGE_PATH': ('auth', 'storage_path'),
        'RECON_CLIENT_AUTO_REFRESH': ('auth', 'auto_refresh'),
        'RECON_CLIENT_LOG_LEVEL': ('logging', 'level'),
        'RECON_CLIENT_LOG_FORMAT': ('logging', 'format'),
        'RECON_CLIENT_LOG_FILE': ('logging', 'file'),
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or str(_default_config_dir() / 'client.conf')
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()
        self._validate()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers, booleans and lists
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                try:
                    section_data[key] = float(value)
                except ValueError:
                    section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:8080/api',
                'timeout': 30.0
            },
            'auth': {
                'storage_backend': 'auto',
                'storage_path': str(Path(self._config_file).parent / 'auth_tokens.enc'),
                'service_name': 'recon-client',
                'login_path': '/login',
                'refresh_threshold_seconds': 60,
                'auto_refresh': False
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'audit_file': None
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if section_data.get(key) in (None, ''):
                    section_data[key] = default_value

    def _validate(self) -> None:
        backend = self.get_storage_backend()
        if backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend '{backend}', expected one of {', '.join(STORAGE_BACKENDS)}",
                config_key='auth.storage_backend'
            )

        log_format = self.get_log_format()
        if log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"Unknown log format '{log_format}', expected one of {', '.join(LOG_FORMATS)}",
                config_key='logging.format'
            )

        log_level = self.get_log_level()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level '{log_level}'", config_key='logging.level')

        if self.get_server_timeout() <= 0:
            raise ConfigurationError("Server timeout must be positive", config_key='server.timeout')

        url = self.get_server_url()
        if not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Server URL must be http(s): {url}", config_key='server.url')

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            raise ConfigurationError(f"Configuration key must be 'section.key': {key}", config_key=key)

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value, None removes the override
        """
        previous = dict(self._overrides)
        if value is None:
            self._overrides.pop(key, None)
        else:
            self._overrides[key] = value

        try:
            self._validate()
        except ConfigurationError:
            self._overrides = previous
            raise

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get server URL."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_server_timeout(self) -> float:
        """Get request timeout in seconds, shared by ordinary, refresh and replayed calls."""
        try:
            return float(self.get_config('server.timeout', 30.0))
        except (TypeError, ValueError):
            raise ConfigurationError("Server timeout must be a number", config_key='server.timeout')

    def get_storage_backend(self) -> str:
        return str(self.get_config('auth.storage_backend', 'auto')).lower()

    def get_storage_path(self) -> str:
        return str(self.get_config('auth.storage_path'))

    def get_service_name(self) -> str:
        return str(self.get_config('auth.service_name', 'recon-client'))

    def get_login_path(self) -> str:
        """Get the authentication entry point used after a forced logout."""
        return str(self.get_config('auth.login_path', '/login'))

    def get_refresh_threshold(self) -> int:
        return int(self.get_config('auth.refresh_threshold_seconds', 60))

    def is_auto_refresh_enabled(self) -> bool:
        return bool(self.get_config('auth.auto_refresh', False))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
