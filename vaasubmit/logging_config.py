"""
Logging configuration for vaasubmit.

Provides structured JSON logging and an audit logger with one method per
submission or verification event.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, List, Optional

from . import config

# Context variable tying together every event of one broadcast or oracle run
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for submission and verification events.

    Every resolver round, signature record operation, executed group and
    oracle check outcome goes through here.
    """

    def __init__(self, name: str = "vaasubmit.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "correlation_id": correlation_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def resolution_round(
        self,
        program_id: str,
        iteration: int,
        outcome: str,
        missing: Optional[List[str]] = None
    ) -> None:
        """Log one resolver round."""
        self._log(
            logging.DEBUG,
            "RESOLUTION_ROUND",
            program_id=program_id,
            iteration=iteration,
            outcome=outcome,
            missing=missing,
            message=f"Resolver round {iteration} returned {outcome}"
        )

    def resolution_complete(
        self,
        program_id: str,
        iterations: int,
        groups: int
    ) -> None:
        """Log a resolved execution plan."""
        self._log(
            logging.INFO,
            "RESOLUTION_COMPLETE",
            program_id=program_id,
            iterations=iterations,
            groups=groups,
            message=f"Resolved in {iterations} iterations ({groups} instruction groups)"
        )

    def signatures_posted(
        self,
        address: str,
        guardian_set_index: int,
        count: int
    ) -> None:
        """Log a posted signature record."""
        self._log(
            logging.INFO,
            "SIGNATURES_POSTED",
            address=address,
            guardian_set_index=guardian_set_index,
            count=count,
            message=f"Signatures posted: {address}"
        )

    def signatures_closed(self, address: str, refund_recipient: str) -> None:
        """Log a reclaimed signature record."""
        self._log(
            logging.INFO,
            "SIGNATURES_CLOSED",
            address=address,
            refund_recipient=refund_recipient,
            message=f"Signatures closed: {address}"
        )

    def cleanup_failed(self, address: str, error: str, primary_error: Optional[str] = None) -> None:
        """Log a failure to close a signature record."""
        self._log(
            logging.ERROR,
            "CLEANUP_FAILED",
            address=address,
            error=error,
            primary_error=primary_error,
            message=f"Failed to close signatures account {address}: {error}"
        )

    def group_executed(self, group_index: int, signature: str) -> None:
        """Log a committed instruction group."""
        self._log(
            logging.INFO,
            "GROUP_EXECUTED",
            group_index=group_index,
            signature=signature,
            message=f"Executed group {group_index}: {signature}"
        )

    def group_failed(self, group_index: int, error: str) -> None:
        """Log the failing instruction group."""
        self._log(
            logging.ERROR,
            "GROUP_FAILED",
            group_index=group_index,
            error=error,
            message=f"Group {group_index} failed: {error}"
        )

    def oracle_check(self, check: str, outcome: str, details: Optional[str] = None) -> None:
        """Log the outcome of one oracle check."""
        self._log(
            logging.INFO,
            "ORACLE_CHECK",
            check=check,
            outcome=outcome,
            details=details,
            message=f"Check {check}: {outcome}"
        )

    def security_defect(
        self,
        defect: str,
        severity: str = "critical",
        **details
    ) -> None:
        """Log a defect found in the program under test."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_DEFECT",
            defect=defect,
            severity=severity,
            **details,
            message=f"Security defect: {defect}"
        )


def configure_logging(
    level: str = config.LOG_LEVEL,
    json_format: bool = config.LOG_JSON,
    log_file: Optional[str] = config.LOG_FILE
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting
        log_file: Optional file path for log output
    """
    if config.is_debug():
        level = "DEBUG"
    if config.is_production():
        json_format = True

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current context.

    Args:
        correlation_id: ID to set, or None to generate one

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str:
    """Get the current correlation ID."""
    return correlation_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
