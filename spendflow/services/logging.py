"""
Structured logging for the Spendflow engine.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import os

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Root of the package logger hierarchy; module loggers propagate here
logger = logging.getLogger("spendflow")


# Structured JSON formatter for production
class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def configure_logging(level: Optional[str] = None, use_json: Optional[bool] = None) -> logging.Logger:
    """(Re)configure the package logger. Safe to call more than once."""
    level_name = (level or LOG_LEVEL).upper()
    if use_json is None:
        use_json = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level_name, logging.INFO))
    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False
    return logger


configure_logging()


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None,
    )
    record.extra_fields = extra_fields
    if logger.isEnabledFor(level):
        logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_id: Optional[str] = None,
    **kwargs
):
    """Log HTTP request."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if client_id:
        extra_fields["client_id"] = client_id
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{method} {path} {status_code}", extra_fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None
):
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception:
        logger.exception(message, extra={"extra_fields": extra_fields})
    else:
        _emit(logging.ERROR, message, extra_fields)


def log_ledger_operation(
    operation: str,
    outcome: str,
    request_id: str,
    budget_line_id: str,
    period: str,
    amount: float,
):
    """Log a budget ledger mutation (or its idempotent replay)."""
    _emit(
        logging.INFO,
        f"ledger {operation} {outcome}: request={request_id} line={budget_line_id} period={period} amount={amount:,.2f}",
        {
            "type": "ledger_operation",
            "operation": operation,
            "outcome": outcome,
            "request_id": request_id,
            "budget_line_id": budget_line_id,
            "period": period,
            "amount": amount,
        },
    )


def log_chain_transition(
    request_id: str,
    chain_kind: str,
    from_state: str,
    to_state: str,
    stage_index: Optional[int],
    actor: Optional[str] = None,
):
    """Log an approval chain state change."""
    _emit(
        logging.INFO,
        f"chain {chain_kind} {request_id}: {from_state} -> {to_state} (stage {stage_index})",
        {
            "type": "chain_transition",
            "request_id": request_id,
            "chain_kind": chain_kind,
            "from_state": from_state,
            "to_state": to_state,
            "stage_index": stage_index,
            "actor": actor,
        },
    )
