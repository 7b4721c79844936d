"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger
from loan_orchestrator.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


transition_logger = logging.getLogger("loan_orchestrator.transitions")


def log_transition(
    loan_id: str,
    borrower: str,
    from_status: str,
    to_status: str,
    reason: Optional[str] = None,
) -> None:
    """Log a loan state transition for audit"""
    transition_logger.info(
        "Loan transition",
        extra={
            "loan_id": loan_id,
            "borrower": borrower,
            "step": "transition",
            "from_status": from_status,
            "to_status": to_status,
            "reason": reason,
        },
    )
