import structlog
import logging
import sys
from typing import Dict, Any, Iterable, Optional
from datetime import datetime, timezone
import os

from taskrelay.config.settings import LoggingSettings

# Keys dropped from every event before rendering
REDACTED_KEYS = frozenset({"value", "secret", "token", "password"})
CONTEXT_KEYS = ("session_id", "task_id", "call_id")


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Route structlog through stdlib logging with JSON or console output"""

    settings = settings or LoggingSettings()
    level = getattr(logging, settings.level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # uvicorn access lines duplicate the connection logs
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_task_context,
        drop_sensitive_fields,
    ]

    if settings.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=settings.service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_task_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound session/task/call identifiers onto the event when missing"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()
    for key in CONTEXT_KEYS:
        if context.get(key) and event_dict.get(key) is None:
            event_dict[key] = context[key]
    return event_dict


def drop_sensitive_fields(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any],
    keys: Iterable[str] = REDACTED_KEYS
) -> Dict[str, Any]:
    for key in keys:
        event_dict.pop(key, None)
    return event_dict


class TaskLogger:
    """Named log events for the task engine, tool executor and state store"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_task_event(
        self,
        event_type: str,
        task_id: str,
        session_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ):
        self.logger.info("task_event", event_type=event_type, task_id=task_id,
                         session_id=session_id, data=data or {})

    def log_tool_execution(
        self,
        tool_id: str,
        task_id: Optional[str],
        invocation_id: Optional[str],
        duration_ms: Optional[float] = None,
        success: bool = True,
        error_kind: Optional[str] = None,
        error: Optional[str] = None
    ):
        """Successful invocations log at info, failures at warning"""

        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_id=tool_id,
            task_id=task_id,
            invocation_id=invocation_id,
            duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
            success=success,
            error_kind=error_kind,
            error=error
        )

    def log_state_transition(self, task_id: str, from_status: str, to_status: str, reason: Optional[str] = None):
        self.logger.info("task_transition", task_id=task_id, from_status=from_status,
                         to_status=to_status, reason=reason)

    def log_state_update(self, session_id: Optional[str], visibility: str, action: str, key: str):
        """State mutations. Values are never logged."""
        self.logger.debug("state_update", session_id=session_id, visibility=visibility, action=action, key=key)


task_logger = TaskLogger("taskrelay")
