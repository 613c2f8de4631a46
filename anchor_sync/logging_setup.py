"""
Logging setup and configuration for anchor-sync.

Every run writes its own log file and error-log file, named after the run
timestamp and carried by the run context. Old run logs are removed after the
retention period.
"""

import os
import re
import glob
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'credential', 'pwd'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern1, r'\1****\2', msg, flags=re.IGNORECASE)

            # 'key': 'value' as printed by dict reprs
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern2 = rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])'
                msg = re.sub(pattern2, r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for anchor-sync runs.

    Attaches a run log, an error-only log and an optional console handler to
    the root logger.
    """

    LOG_PATTERN = '*.log'

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 30
        self.handlers: List[logging.Handler] = []

    def setup_logging(self, config: Dict[str, Any], run_context=None) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            run_context: Run context providing the log and error-log paths
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        self.retention_days = logging_config.get('retention_days', 30)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'INFO').upper()

        self._ensure_log_directory()

        log_path = getattr(run_context, 'log_path', None) or os.path.join(self.log_dir, 'anchor_sync.log')
        error_log_path = (getattr(run_context, 'error_log_path', None)
                          or os.path.join(self.log_dir, 'anchor_sync_errors.log'))

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        self._remove_handlers(root_logger)

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        self._add_handler(root_logger, file_handler)

        error_handler = logging.FileHandler(error_log_path, encoding='utf-8', delay=True)
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(detailed_formatter)
        error_handler.addFilter(sensitive_filter)
        self._add_handler(root_logger, error_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            self._add_handler(root_logger, console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, log={log_path}, errors={error_log_path}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _add_handler(self, root_logger: logging.Logger, handler: logging.Handler) -> None:
        root_logger.addHandler(handler)
        self.handlers.append(handler)

    def _remove_handlers(self, root_logger: logging.Logger) -> None:
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []

    def reset(self) -> None:
        """Detach and close the handlers installed by setup_logging."""
        self._remove_handlers(logging.getLogger())
        self.configured = False

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _cleanup_old_logs(self) -> None:
        """Clean up run logs older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, self.LOG_PATTERN)):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, self.LOG_PATTERN)))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], run_context=None) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        run_context: Optional run context with log destinations
    """
    _logging_manager.setup_logging(config, run_context)


class AuditLogger:
    """Logger for directory writes, kept apart from operational logging."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_attribute_write(self, dn: str, attribute: str, server: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Attribute write {status}: {attribute} on {dn} server={server}")

    def log_join(self, source_dn: str, target_dn: str, attribute: str):
        self.logger.info(f"Join SUCCESS: {source_dn} -> {target_dn} attribute={attribute}")

    def log_configuration_access(self, config_file: Optional[str]):
        self.logger.info(f"Configuration loaded: {config_file}")


# Global audit logger instance
audit_logger = AuditLogger()
