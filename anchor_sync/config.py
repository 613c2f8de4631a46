"""
Configuration loading and management for anchor-sync.

This module handles loading configuration from YAML files and environment
variables, with validation and defaults, and turns the propagation section
into run options.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from anchor_sync.models import (
    AttributePair, Domain, Forest, Identity, PropagationOptions, ScopeSelector,
    SearchBase, SearchScope, DEFAULT_SOURCE_ATTRIBUTE, DEFAULT_TARGET_ATTRIBUTE
)

logger = logging.getLogger(__name__)

SCOPE_TYPES = ('identity', 'search_base', 'domain', 'forest')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'join.source.ldap.bind_password': 'JOIN_SOURCE_BIND_PASSWORD',
        'join.target.ldap.bind_password': 'JOIN_TARGET_BIND_PASSWORD',
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
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if not env_value:
                continue
            if config_key.startswith('join.') and 'join' not in self.config:
                continue
            self._set_nested_value(self.config, config_key, env_value)
            logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        if 'ldap' in self.config or 'join' not in self.config:
            errors.extend(_validate_ldap_section(self.config.get('ldap') or {}, 'ldap'))

        propagation = self.config.get('propagation') or {}
        scope = propagation.get('scope')
        if scope is not None:
            try:
                scope_from_config(scope)
            except ConfigurationError as e:
                errors.append(str(e))

        join = self.config.get('join')
        if join is not None:
            for side in ('source', 'target'):
                side_config = (join or {}).get(side) or {}
                errors.extend(_validate_ldap_section(side_config.get('ldap') or {}, f"join.{side}.ldap"))

        errors.extend(_validate_error_handling(self.config.get('error_handling') or {}, 'error_handling'))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'verify_ssl': True,
            'start_tls': False,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        propagation_defaults = {
            'source_attribute': DEFAULT_SOURCE_ATTRIBUTE,
            'target_attribute': DEFAULT_TARGET_ATTRIBUTE,
            'report_only': False,
            'only_update_null_target': False,
            'dry_run': False,
            'confirm': False
        }
        propagation_config = self.config.setdefault('propagation', {})
        for key, value in propagation_defaults.items():
            propagation_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'retention_days': 30,
            'console_output': True,
            'console_level': 'INFO'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        self.config.setdefault('output', {}).setdefault('report_dir', 'reports')

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Directory clients read their retry settings from their own section
        ldap_config.setdefault('error_handling', error_config)
        for side in ('source', 'target'):
            side_ldap = ((self.config.get('join') or {}).get(side) or {}).get('ldap')
            if side_ldap is not None:
                for key, value in ldap_defaults.items():
                    side_ldap.setdefault(key, value)
                side_ldap.setdefault('error_handling', error_config)


def _validate_ldap_section(ldap_config: Dict[str, Any], prefix: str) -> list:
    errors = []
    for field in ('server_url', 'bind_dn', 'bind_password'):
        if not ldap_config.get(field):
            errors.append(f"Missing required field: {prefix}.{field}")
    errors.extend(_validate_error_handling(ldap_config.get('error_handling') or {}, f"{prefix}.error_handling"))
    return errors


def _validate_error_handling(error_config: Dict[str, Any], prefix: str) -> list:
    errors = []
    max_retries = error_config.get('max_retries')
    if max_retries is not None:
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 1:
            errors.append(f"{prefix}.max_retries must be an integer of at least 1, got {max_retries!r}")
    retry_wait = error_config.get('retry_wait_seconds')
    if retry_wait is not None:
        if isinstance(retry_wait, bool) or not isinstance(retry_wait, (int, float)) or retry_wait < 0:
            errors.append(f"{prefix}.retry_wait_seconds must be a non-negative number, got {retry_wait!r}")
    return errors


def scope_from_config(scope: Dict[str, Any]) -> ScopeSelector:
    """
    Build a scope selector from a ``propagation.scope`` mapping.

    Raises:
        ConfigurationError: If the scope type is unknown or its value missing
    """
    if not isinstance(scope, dict):
        raise ConfigurationError("propagation.scope must be a mapping with a 'type' key")

    scope_type = str(scope.get('type', '')).lower()
    if scope_type not in SCOPE_TYPES:
        raise ConfigurationError(
            f"propagation.scope.type must be one of {', '.join(SCOPE_TYPES)}, got '{scope.get('type')}'"
        )

    if scope_type == 'identity':
        ids = scope.get('identities')
        if isinstance(ids, str):
            ids = [ids]
        if not ids:
            raise ConfigurationError("propagation.scope.identities must list at least one identity")
        return Identity(ids=tuple(str(i) for i in ids))

    if scope_type == 'search_base':
        dn = scope.get('search_base')
        if not dn:
            raise ConfigurationError("propagation.scope.search_base is required for a search_base scope")
        try:
            search_scope = SearchScope.parse(scope.get('search_scope', 'subtree'))
        except ValueError as e:
            raise ConfigurationError(f"propagation.scope.search_scope: {e}")
        return SearchBase(dn=dn, scope=search_scope)

    value = scope.get(scope_type)
    if not value:
        raise ConfigurationError(f"propagation.scope.{scope_type} is required for a {scope_type} scope")
    return Domain(fqdn=value) if scope_type == 'domain' else Forest(fqdn=value)


def options_from_config(config: Dict[str, Any]) -> PropagationOptions:
    """
    Build propagation options from a loaded configuration.

    Raises:
        ConfigurationError: If no scope is configured
    """
    propagation = config.get('propagation') or {}
    if not propagation.get('scope'):
        raise ConfigurationError("No propagation scope configured")

    return PropagationOptions(
        scope=scope_from_config(propagation['scope']),
        attributes=AttributePair(
            source=propagation.get('source_attribute', DEFAULT_SOURCE_ATTRIBUTE),
            target=propagation.get('target_attribute', DEFAULT_TARGET_ATTRIBUTE)
        ),
        report_only=bool(propagation.get('report_only', False)),
        only_update_null_target=bool(propagation.get('only_update_null_target', False)),
        dry_run=bool(propagation.get('dry_run', False))
    )


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
