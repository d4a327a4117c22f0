"""
=====================================================
Core infrastructure package for embedded databases.
=====================================================

Provides configuration identity, the error taxonomy and logging helpers
used throughout the package.

Modules:
    config: Configuration identity built from recognized options
    exceptions: Error taxonomy shared by all providers
    logger: Package logging configuration and teardown reporting

Example:
    >>> from embedded_db.core import DatabaseConfiguration, get_logger
    >>>
    >>> logger = get_logger(__name__)
    >>> config = DatabaseConfiguration.from_environment()
    >>> logger.info(f"Isolation mode: {config.isolation.value}")
"""

__all__ = [
    'ConfigurationError',
    'DatabaseConfiguration',
    'DatabaseCreationError',
    'EmbeddedDatabaseError',
    'PreparationError',
    'PreparerIsolation',
    'ProviderError',
    'TeardownWarning',
    'get_logger',
    'load_properties',
    'log_teardown_failure',
    'setup_logging',
]

from embedded_db.core.config import DatabaseConfiguration, PreparerIsolation, load_properties
from embedded_db.core.exceptions import (
    ConfigurationError,
    DatabaseCreationError,
    EmbeddedDatabaseError,
    PreparationError,
    ProviderError,
    TeardownWarning,
)
from embedded_db.core.logger import get_logger, log_teardown_failure, setup_logging
