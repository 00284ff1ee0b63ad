from __future__ import annotations

import secrets
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional, Protocol

from loginguard.logging import get_logger

logger = get_logger(__name__)

# Browser/session context the current login attempt belongs to
csrf_context_var: ContextVar[Optional[str]] = ContextVar("csrf_context", default=None)


class CsrfTokenSource(Protocol):
    async def get_stored_token(self) -> Optional[str]: ...


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def validate_token(provided: Optional[str], stored: Optional[str]) -> bool:
    """True iff both tokens are non-empty and identical (constant-time compare)."""
    if not provided or not stored:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), stored.encode("utf-8"))


@contextmanager
def bind_csrf_context(context_id: Optional[str]) -> Iterator[None]:
    """Scope the CSRF context for login attempts made inside the block."""
    reset_token = csrf_context_var.set(context_id)
    try:
        yield
    finally:
        csrf_context_var.reset(reset_token)


class CsrfTokenStore:
    """Issued anti-forgery tokens keyed by caller context (cookie, browser session)."""

    def __init__(self) -> None:
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, context_id: str) -> str:
        token = generate_token()
        with self._lock:
            self._tokens[context_id] = token
        return token

    def get(self, context_id: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(context_id)

    def discard(self, context_id: str) -> None:
        with self._lock:
            self._tokens.pop(context_id, None)

    async def get_stored_token(self) -> Optional[str]:
        context_id = csrf_context_var.get()
        if not context_id:
            logger.debug("csrf_context_missing")
            return None
        return self.get(context_id)
