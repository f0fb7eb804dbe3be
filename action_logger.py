"""
Forensic action log

One ActionLogger per operation (provisioning, service action, approval, state sync).
Entries accumulate in memory and are written once, as a single action_logs row, on finalize().
Rows are never updated or deleted and are never read by business logic.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import psycopg2

from database import insert_action_log

logger = logging.getLogger(__name__)


class LogLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    DEBUG = "debug"


SENSITIVE_KEYS = {'password', 'newpass', 'new_password', 'newPassword', 'conf', 'api_key', 'apikey', 'apipass', 'token'}


def mask_secret(value: Optional[str]) -> Optional[str]:
    """First characters plus ****"""
    if not value:
        return value
    value = str(value)
    return f"{value[:3]}****" if len(value) > 6 else "****"


def scrub(data: Any) -> Any:
    """Copy of data with secret-looking values masked, safe to persist or log"""
    if isinstance(data, dict):
        return {k: (mask_secret(v) if k in SENSITIVE_KEYS and isinstance(v, str) else scrub(v)) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [scrub(item) for item in data]
    if isinstance(data, datetime):
        return data.isoformat()
    return data


class ActionLogger:
    """Collects timestamped entries for one operation and persists them once"""

    def __init__(self, operation: str, order_id: Optional[int] = None, **context):
        self.operation = operation
        self.order_id = order_id
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        self.entries: List[Dict[str, Any]] = []
        self.provider_result: Optional[Dict[str, Any]] = None
        self.started_at = datetime.utcnow()
        self.finalized = False

    def _add(self, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None):
        entry = {
            'timestamp': datetime.utcnow().isoformat(),
            'level': level.value,
            'message': message,
        }
        if data:
            entry['data'] = scrub(data)
        self.entries.append(entry)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._add(LogLevel.INFO, message, data)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._add(LogLevel.SUCCESS, message, data)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._add(LogLevel.ERROR, message, data)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._add(LogLevel.WARNING, message, data)

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._add(LogLevel.DEBUG, message, data)

    def set_context(self, **context):
        self.context.update({k: v for k, v in context.items() if v is not None})

    def set_provider_result(self, provider: str, api_called: str, success: bool,
                            result: Any = None, error: Optional[str] = None,
                            duration_ms: Optional[float] = None):
        self.provider_result = {
            'provider': provider,
            'api_called': api_called,
            'success': success,
            'result': scrub(result),
            'error': error,
            'api_duration_ms': round(duration_ms, 2) if duration_ms is not None else None,
        }

    def to_record(self, success: bool, error_message: Optional[str] = None) -> Dict[str, Any]:
        completed_at = datetime.utcnow()
        return {
            'order_id': self.order_id,
            'operation': self.operation,
            'status': 'success' if success else 'failed',
            'context': scrub(self.context),
            'entries': self.entries,
            'provider_result': self.provider_result,
            'error_message': error_message,
            'started_at': self.started_at,
            'completed_at': completed_at,
            'duration_ms': int((completed_at - self.started_at).total_seconds() * 1000),
        }

    async def finalize(self, success: bool, error_message: Optional[str] = None) -> Optional[int]:
        """Persist the log once; persistence failures never break the operation"""
        if self.finalized:
            return None
        self.finalized = True
        self._add(LogLevel.SUCCESS if success else LogLevel.ERROR,
                  f"{self.operation} {'completed' if success else 'failed'}",
                  {'error': error_message} if error_message else None)
        try:
            return await insert_action_log(self.to_record(success, error_message))
        except (psycopg2.Error, ValueError) as e:
            logger.error(f"❌ ACTION LOG: Failed to persist {self.operation} log for order {self.order_id}: {e}")
            return None
