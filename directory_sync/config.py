"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. Sync behaviour is exposed as an immutable SyncOptions
value; overrides passed to the orchestrator go through merge_options.
"""

import os
import yaml
import logging
from dataclasses import dataclass, fields, replace
from typing import Dict, Any, List, Optional, Tuple

from directory_sync.errors import ConfigurationError
from directory_sync.mapper import DEFAULT_FIELD_MAPPINGS, parse_field_mappings, validate_field_mappings
from directory_sync.models import FieldMapping
from directory_sync.rules import MappingRule, parse_mapping_rules

logger = logging.getLogger(__name__)

__all__ = ['ConfigurationError', 'ConfigLoader', 'SyncOptions', 'load_config', 'merge_options']


@dataclass(frozen=True)
class SyncOptions:
    """Immutable sync behaviour settings passed to the orchestrator."""

    batch_size: int = 50
    update_existing: bool = True
    deactivate_missing: bool = False
    user_types: Tuple[str, ...] = ('Member',)
    department_filter: Tuple[str, ...] = ()
    include_disabled: bool = False
    exclude_users: Tuple[str, ...] = ()
    max_workers: int = 1
    max_error_details: int = 50
    field_mappings: Tuple[FieldMapping, ...] = DEFAULT_FIELD_MAPPINGS
    mapping_rules: Tuple[MappingRule, ...] = ()
    notification_recipients: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.max_error_details < 0:
            raise ConfigurationError("max_error_details cannot be negative")

    @classmethod
    def from_config(cls, sync_config: Optional[Dict[str, Any]],
                    notification_recipients: Optional[List[str]] = None) -> 'SyncOptions':
        """
        Build options from the ``sync`` configuration section.

        Args:
            sync_config: The ``sync`` section (defaults used for missing keys)
            notification_recipients: Addresses that receive run summaries

        Returns:
            SyncOptions instance
        """
        sync_config = sync_config or {}
        defaults = cls()

        raw_mappings = sync_config.get('field_mappings')
        field_mappings = (tuple(parse_field_mappings(raw_mappings))
                          if raw_mappings else defaults.field_mappings)

        return cls(
            batch_size=int(sync_config.get('batch_size', defaults.batch_size)),
            update_existing=bool(sync_config.get('update_existing', defaults.update_existing)),
            deactivate_missing=bool(sync_config.get('deactivate_missing', defaults.deactivate_missing)),
            user_types=_as_tuple(sync_config.get('user_types', defaults.user_types)),
            department_filter=_as_tuple(sync_config.get('department_filter')),
            include_disabled=bool(sync_config.get('include_disabled', defaults.include_disabled)),
            exclude_users=_as_tuple(sync_config.get('exclude_users')),
            max_workers=int(sync_config.get('max_workers', defaults.max_workers)),
            max_error_details=int(sync_config.get('max_error_details', defaults.max_error_details)),
            field_mappings=field_mappings,
            mapping_rules=tuple(parse_mapping_rules(sync_config.get('mapping_rules', []))),
            notification_recipients=_as_tuple(notification_recipients)
        )


def _as_tuple(value) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


_TUPLE_FIELDS = frozenset(['user_types', 'department_filter', 'exclude_users',
                           'field_mappings', 'mapping_rules', 'notification_recipients'])


def merge_options(base: SyncOptions, overrides: Optional[Dict[str, Any]] = None) -> SyncOptions:
    """
    Return a copy of ``base`` with the given partial overrides applied.

    Raises:
        ConfigurationError: If an override names an unknown option
    """
    if not overrides:
        return base

    known = {f.name for f in fields(SyncOptions)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigurationError(f"Unknown sync options: {', '.join(unknown)}")

    changes = {}
    for key, value in overrides.items():
        if key in _TUPLE_FIELDS:
            value = _as_tuple(value)
        changes[key] = value

    if 'field_mappings' in changes:
        validate_field_mappings(changes['field_mappings'])

    return replace(base, **changes)


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'record_store.auth.password': 'RECORD_STORE_PASSWORD',
        'record_store.auth.token': 'RECORD_STORE_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory_config = self.config.get('directory') or {}
        for field_name in ['server_url', 'bind_dn', 'bind_password']:
            if not directory_config.get(field_name):
                errors.append(f"Missing required directory field: {field_name}")

        store_config = self.config.get('record_store') or {}
        if not store_config.get('base_url'):
            errors.append("Missing required record_store field: base_url")

        auth = store_config.get('auth') or {}
        method = (auth.get('method') or '').lower()
        if method == 'basic' and not (auth.get('username') and auth.get('password')):
            errors.append("record_store.auth basic method requires username and password")
        elif method in ('token', 'bearer') and not auth.get('token'):
            errors.append("record_store.auth token method requires token")
        elif method and method not in ('basic', 'token', 'bearer', 'none'):
            errors.append(f"Unknown record_store.auth method: {method}")

        sync_config = self.config.get('sync') or {}
        batch_size = sync_config.get('batch_size', 50)
        if not isinstance(batch_size, int) or batch_size < 1:
            errors.append("sync.batch_size must be a positive integer")
        max_workers = sync_config.get('max_workers', 1)
        if not isinstance(max_workers, int) or max_workers < 1:
            errors.append("sync.max_workers must be a positive integer")

        # Mapping allow-lists are checked at load time, not mid-run
        try:
            if sync_config.get('field_mappings'):
                parse_field_mappings(sync_config['field_mappings'])
            parse_mapping_rules(sync_config.get('mapping_rules', []))
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Empty YAML sections parse as None
        for section in ('directory', 'record_store', 'sync', 'delta', 'logging',
                        'error_handling', 'notifications'):
            if self.config.get(section) is None:
                self.config[section] = {}

        directory_defaults = {
            'user_base_dn': '',
            'user_filter': '(&(objectCategory=person)(objectClass=user))',
            'group_base_dn': '',
            'page_size': 500,
            'connection_timeout': 10,
            'receive_timeout': 30
        }
        directory_config = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)

        store_defaults = {
            'employees_list': 'Employees',
            'sync_log_list': 'SyncLog',
            'sync_config_list': 'SyncConfig',
            'page_size': 500,
            'timeout': 30,
            'verify_ssl': True
        }
        store_config = self.config.setdefault('record_store', {})
        store_config.setdefault('auth', {})
        for key, value in store_defaults.items():
            store_config.setdefault(key, value)

        sync_defaults = {
            'batch_size': 50,
            'update_existing': True,
            'deactivate_missing': False,
            'user_types': ['Member'],
            'department_filter': [],
            'include_disabled': False,
            'exclude_users': [],
            'max_workers': 1,
            'max_error_details': 50
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        delta_config = self.config.setdefault('delta', {})
        delta_config.setdefault('fallback_to_full', True)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'file_name': 'directory-sync.log',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_success': False,
            'email_on_error': True,
            'email_on_failure': True,
            'include_added_users': False,
            'max_users_to_list': 20,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
