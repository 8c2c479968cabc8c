"""
Logging configuration for UniKYC.

Provides structured JSON logging and an audit logger for record
lifecycle and time-lock events.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line, suitable for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Every status change, time-lock registration, callback and payload
    release goes through here so the trail can be reconstructed from logs.
    """

    def __init__(self, name: str = "unikyc.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs: Any) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs,
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None,
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def record_created(self, record_id: str, address: str, request_id: str) -> None:
        self._log(
            logging.INFO,
            "RECORD_CREATED",
            record_id=record_id,
            address=address,
            unlock_request_id=request_id,
            message=f"KYC record {record_id} created as pending",
        )

    def status_transition(
        self,
        record_id: str,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
    ) -> None:
        level = logging.WARNING if to_status == "rejected" else logging.INFO
        self._log(
            level,
            "STATUS_TRANSITION",
            record_id=record_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            message=f"{record_id}: {from_status} -> {to_status}",
        )

    def record_superseded(self, record_id: str, superseded_by: str) -> None:
        self._log(
            logging.INFO,
            "RECORD_SUPERSEDED",
            record_id=record_id,
            superseded_by=superseded_by,
            message=f"{record_id} superseded by {superseded_by}",
        )

    def unlock_registered(self, request_id: str, unlock_block_height: int, chain_id: int) -> None:
        self._log(
            logging.INFO,
            "UNLOCK_REGISTERED",
            unlock_request_id=request_id,
            unlock_block_height=unlock_block_height,
            chain_id=chain_id,
            message=f"Time-lock {request_id} registered for block {unlock_block_height}",
        )

    def unlock_callback(self, request_id: str, outcome: str) -> None:
        level = logging.INFO if outcome == "ACCEPTED" else logging.WARNING
        self._log(
            level,
            "UNLOCK_CALLBACK",
            unlock_request_id=request_id,
            outcome=outcome,
            message=f"Unlock callback for {request_id}: {outcome}",
        )

    def payload_released(self, record_id: str, shares_used: int, requested_by: Optional[str] = None) -> None:
        self._log(
            logging.INFO,
            "PAYLOAD_RELEASED",
            record_id=record_id,
            shares_used=shares_used,
            requested_by=requested_by,
            message=f"Payload released for {record_id}",
        )

    def security_event(self, event: str, severity: str = "medium", **details: Any) -> None:
        """Log a security or data-integrity event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL,
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}",
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}",
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
