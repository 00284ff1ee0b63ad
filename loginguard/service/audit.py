from __future__ import annotations

import asyncio
import inspect
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Set, Union

from loginguard.logging import get_audit_logger, get_correlation_id, get_logger

logger = get_logger(__name__)

LOGIN_ATTEMPT = "login_attempt"
LOGIN_FAILURE = "login_failure"
LOGIN_SUCCESS = "login_success"


@dataclass
class AuditEvent:
    event: str
    email: str
    success: bool
    security_flags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> Union[None, Awaitable[None]]: ...


class LoggingAuditSink:
    """Writes audit events to the structured log on the audit channel."""

    def __init__(self, name: str = "loginguard.audit") -> None:
        self._log = get_audit_logger(name)

    def emit(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        name = payload.pop("event")
        level = self._log.info if event.success else self._log.warning
        level(name, **payload)


class AuditDispatcher:
    """Fire-and-forget delivery; a failing sink never affects the login result."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event: AuditEvent) -> None:
        try:
            result = self.sink.emit(event)
        except Exception as exc:
            logger.warning("audit_sink_failed", audit_event=event.event, error=str(exc))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("audit_sink_failed", error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight async deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
