"""Structured audit logging for provisioning runs."""

import logging
from typing import Any

import structlog

from idm.provision.engine.plan import OperationResult, OpStatus, SyncResult


def configure_audit_logging(
    *,
    log_level: str | int,
    json_format: bool,
    service_name: str,
) -> None:
    # Resolve log level via stdlib logging (NOT structlog)
    if isinstance(log_level, str):
        level = getattr(logging, log_level.upper(), logging.INFO)
    else:
        level = int(log_level)

    logging.basicConfig(level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)


class AuditLogger:
    """Audit logger for directory writes."""

    def __init__(self, enabled: bool = True, logger: Any = None):
        """Initialize audit logger.

        Args:
            enabled: Whether audit logging is enabled
            logger: Optional custom logger
        """
        self._enabled = enabled
        self._logger = logger or structlog.get_logger("audit")

    def log_operation(self, result: OperationResult) -> None:
        """Log the outcome of a single operation."""
        if not self._enabled:
            return

        op = result.operation
        log_data: dict[str, Any] = {
            "event": "provision_operation",
            "op_id": op.op_id,
            "kind": op.kind.value,
            "entity_kind": op.entity.value,
            "entity": op.name,
            "description": op.describe(),
            "status": result.status.value,
            "latency_ms": round(result.duration_ms, 2),
        }
        if result.error:
            log_data["error"] = result.error

        if result.status is OpStatus.APPLIED:
            self._logger.info(**log_data)
        else:
            self._logger.warning(**log_data)

    def log_run(self, result: SyncResult) -> None:
        """Log the outcome of a whole run."""
        if not self._enabled:
            return

        log_data: dict[str, Any] = {
            "event": "provision_run",
            "applied": len(result.applied),
            "failed": len(result.failed),
            "skipped": len(result.skipped),
            "tracking_updated": result.tracking_updated,
            "tracked": len(result.tracked),
            "success": result.success,
        }
        if result.errors:
            log_data["errors"] = list(result.errors)

        if result.success:
            self._logger.info(**log_data)
        else:
            self._logger.error(**log_data)
