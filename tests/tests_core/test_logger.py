"""
Test suite for embedded_db.core.logger and embedded_db.core.exceptions.

Tests cover:
- setup_logging: package logger configuration, file output, env level
- ColoredFormatter: colored output without mutating records
- log_teardown_failure: warning emitted once, exception swallowed
- Error taxonomy relationships
"""

import logging

import pytest

from embedded_db.core.exceptions import (
    ConfigurationError,
    DatabaseCreationError,
    EmbeddedDatabaseError,
    PreparationError,
    ProviderError,
    TeardownWarning,
)
from embedded_db.core.logger import (
    PACKAGE_LOGGER,
    ColoredFormatter,
    get_logger,
    log_teardown_failure,
    setup_logging,
)


@pytest.fixture
def restore_package_logger():
    """Restore the package logger handlers and level after a test."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level = list(package_logger.handlers), package_logger.level
    yield package_logger
    for handler in package_logger.handlers:
        handler.close()
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)


# ============================================================================
# UNIT TESTS - logger
# ============================================================================

@pytest.mark.unit
def test_get_logger_sets_level():
    logger = get_logger('embedded_db.tests.level', level='debug')

    assert logger.name == 'embedded_db.tests.level'
    assert logger.level == logging.DEBUG


@pytest.mark.unit
def test_setup_logging_configures_package_logger_only(restore_package_logger):
    """Handlers are installed on the package logger, never on root."""
    root_handlers = list(logging.getLogger().handlers)

    package_logger = setup_logging(log_level='WARNING')

    assert package_logger is restore_package_logger
    assert package_logger.level == logging.WARNING
    assert len(package_logger.handlers) == 1
    assert isinstance(package_logger.handlers[0].formatter, ColoredFormatter)
    assert logging.getLogger().handlers == root_handlers


@pytest.mark.unit
def test_setup_logging_is_idempotent(restore_package_logger):
    setup_logging(log_level='INFO')
    package_logger = setup_logging(log_level='INFO', use_colors=False)

    assert len(package_logger.handlers) == 1
    assert not isinstance(package_logger.handlers[0].formatter, ColoredFormatter)


@pytest.mark.unit
def test_setup_logging_level_from_environment(restore_package_logger, monkeypatch):
    monkeypatch.setenv('EMBEDDED_DATABASE_LOG_LEVEL', 'error')

    package_logger = setup_logging(console_output=False)

    assert package_logger.level == logging.ERROR
    assert package_logger.handlers == []


@pytest.mark.integration
def test_setup_logging_writes_file(restore_package_logger, tmp_path):
    setup_logging(log_level='INFO', log_file='embedded.log', log_dir=str(tmp_path), console_output=False)

    get_logger('embedded_db.tests.file').info("Cluster started on port 54321")
    for handler in restore_package_logger.handlers:
        handler.flush()

    assert "Cluster started on port 54321" in (tmp_path / 'embedded.log').read_text(encoding='utf-8')


@pytest.mark.unit
def test_colored_formatter_does_not_mutate_record():
    formatter = ColoredFormatter('%(emoji)s %(levelname)s - %(message)s')
    record = logging.LogRecord('x', logging.ERROR, __file__, 1, "boom", None, None)

    output = formatter.format(record)

    assert '\033[31mERROR\033[0m' in output
    assert output.startswith('❌')
    assert record.levelname == 'ERROR'
    assert not hasattr(record, 'emoji')


@pytest.mark.unit
def test_log_teardown_failure_logs_warning(caplog):
    logger = get_logger('embedded_db.tests.teardown')
    error = RuntimeError("container already gone")

    with caplog.at_level(logging.WARNING, logger='embedded_db.tests.teardown'):
        warning = log_teardown_failure(logger, "remove container abc", error)

    assert isinstance(warning, TeardownWarning)
    assert len(caplog.records) == 1
    assert "Failed to remove container abc: container already gone" in caplog.records[0].getMessage()
    assert caplog.records[0].exc_info[1] is error


# ============================================================================
# UNIT TESTS - exceptions
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("error_class", [
    ConfigurationError, ProviderError, DatabaseCreationError, PreparationError, TeardownWarning,
])
def test_errors_share_base_class(error_class):
    assert issubclass(error_class, EmbeddedDatabaseError)


@pytest.mark.unit
def test_database_creation_error_is_provider_error():
    assert issubclass(DatabaseCreationError, ProviderError)
    assert issubclass(TeardownWarning, UserWarning)


@pytest.mark.unit
def test_preparation_error_keeps_cause():
    cause = ValueError("bad DDL")

    error = PreparationError("preparer failed", cause=cause, fingerprint='abc')

    assert error.cause is cause
    assert error.fingerprint == 'abc'
    assert str(error) == "preparer failed"
