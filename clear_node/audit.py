"""Operator audit channel for the CLEAR node.

Timestamped diagnostics (errors, stack traces, step outcomes) go here and to
standard logging. Nothing written here is ever returned to the end user.
"""

import json
import logging
import time
import traceback
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from clear_node.config import AUDIT_LOG_DIR

log = logging.getLogger(__name__)


class AuditLogger:
    """Structured audit logger for node steps.

    Logs to standard logging, a dedicated JSONL audit file, and an in-memory
    ring buffer for operator inspection.
    """

    MAX_BUFFER_SIZE = 1000

    def __init__(self, service_name: str = "clear-node", log_dir=AUDIT_LOG_DIR):
        """Initialize audit logger.

        Args:
            service_name: Service identifier for log entries
            log_dir: Directory for dated audit files; None disables the file
        """
        self._service = service_name
        self._file_handler: Optional[logging.FileHandler] = None
        self._buffer: deque[dict] = deque(maxlen=self.MAX_BUFFER_SIZE)
        self._start_time = time.time()
        if log_dir is not None:
            self._setup_file_logging(log_dir)

    def _setup_file_logging(self, log_dir) -> None:
        """Set up file-based audit logging."""
        try:
            log_dir.mkdir(parents=True, exist_ok=True)

            date_str = datetime.now().strftime("%Y-%m-%d")
            log_file = log_dir / f"audit-{date_str}.jsonl"

            self._file_handler = logging.FileHandler(log_file)
            self._file_handler.setLevel(logging.INFO)
            self._file_handler.setFormatter(logging.Formatter("%(message)s"))

            log.info(f"Audit logging to {log_file}")

        except Exception as e:
            log.warning(f"Failed to set up audit file logging: {e}")
            self._file_handler = None

    def log(
        self,
        action: str,
        details: Optional[dict[str, Any]] = None,
        run_id: Optional[str] = None,
        session_id: Optional[str] = None,
        outcome: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> dict:
        """Log an audit event.

        Args:
            action: Action identifier (e.g., "session.created", "resume.rejected")
            details: Additional event details
            run_id: Pipeline run the step belongs to
            session_id: CLEAR verification_session id
            outcome: Outcome id the step resolved to
            error_code: ErrorCode when the step failed

        Returns:
            The recorded entry
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
        }

        if run_id:
            entry["run_id"] = run_id
        if session_id:
            entry["session_id"] = session_id
        if outcome:
            entry["outcome"] = outcome
        if error_code:
            entry["error_code"] = error_code
        if details:
            entry["details"] = details

        json_entry = json.dumps(entry, default=str)

        self._buffer.append(entry)

        log.info(f"AUDIT: {json_entry}")

        if self._file_handler:
            try:
                record = logging.LogRecord(
                    name="audit",
                    level=logging.INFO,
                    pathname="",
                    lineno=0,
                    msg=json_entry,
                    args=(),
                    exc_info=None,
                )
                self._file_handler.emit(record)
            except Exception as e:
                log.warning(f"Failed to write audit log: {e}")

        return entry

    def log_exception(
        self,
        action: str,
        exc: BaseException,
        run_id: Optional[str] = None,
        session_id: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> dict:
        """Record an exception with its message and stack trace."""
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return self.log(
            action,
            details={"exception": str(exc), "stack_trace": stack},
            run_id=run_id,
            session_id=session_id,
            error_code=error_code,
        )

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: Optional[str] = None,
    ) -> list[dict]:
        """Get recent audit events from buffer.

        Args:
            limit: Max events to return
            action_filter: Filter by action prefix (e.g., "resume.")

        Returns:
            List of audit event dicts, newest first
        """
        events = list(self._buffer)
        events.reverse()

        if action_filter:
            events = [e for e in events if e.get("action", "").startswith(action_filter)]

        return events[:limit]

    def get_buffer_stats(self) -> dict:
        return {
            "buffer_size": len(self._buffer),
            "max_buffer_size": self.MAX_BUFFER_SIZE,
            "uptime_seconds": time.time() - self._start_time,
        }


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)."""
    global _audit_logger
    _audit_logger = None
