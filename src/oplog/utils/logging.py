"""
Logging utility module for oplog tailing.

Provides JSON-structured logging with a correlation ID identifying the
tailing session, so entries from successive reconnects can be told apart.
"""

import json
import logging
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar, Token

# Context variable for correlation ID propagation
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord has; anything else came from ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""
    
    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.
        
        Args:
            record: Log record to format
            
        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        
        correlation_id = get_correlation_id()
        if correlation_id:
            log_data['correlation_id'] = correlation_id
        
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        
        # Fields passed via ``extra=`` land directly on the record
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value
        
        return json.dumps(log_data, default=str)


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Get a JSON logger with correlation ID propagation.
    
    Args:
        name: Logger name (typically __name__)
        level: Logging level (default: INFO)
        
    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    
    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger
    
    logger.setLevel(level)
    
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    
    logger.addHandler(handler)
    logger.propagate = False  # Prevent duplicate logs from parent loggers
    
    return logger


class CorrelationContext:
    """Tag every log entry emitted inside the block with one correlation ID.

    A new UUID is generated when no ID is given. The previous ID, if any, is
    restored on exit, so contexts nest.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)
        self._token = None
