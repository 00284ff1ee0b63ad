from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from loginguard.logging import get_logger
from loginguard.storage.models import AuthenticatedUser

logger = get_logger(__name__)


@dataclass
class VerificationResult:
    success: bool
    session: Optional[Dict[str, Any]] = None
    user: Optional[AuthenticatedUser] = None
    error_message: Optional[str] = None


class CredentialVerifier(Protocol):
    async def verify(self, email: str, password: str) -> VerificationResult: ...


def _parse_user(raw: Any) -> Optional[AuthenticatedUser]:
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    return AuthenticatedUser(
        id=str(raw["id"]),
        email=str(raw.get("email") or ""),
        role=raw.get("role"),
    )


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("error_description", "message", "msg", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return default


class HttpCredentialVerifier:
    """Password grant against a remote identity provider.

    POSTs ``{"email", "password"}`` as JSON. A 2xx answer must carry ``session``
    and ``user`` objects; 400/401/403/422 are credential rejections; anything
    else (including transport errors) is raised so callers can treat the
    backend as unavailable.
    """

    REJECTION_STATUSES = {400, 401, 403, 422}

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, email: str, password: str) -> httpx.Response:
        return await client.post(
            self.url,
            json={"email": email, "password": password},
            headers=self._headers(),
        )

    async def verify(self, email: str, password: str) -> VerificationResult:
        if self._client is not None:
            response = await self._post(self._client, email, password)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await self._post(client, email, password)

        if response.status_code in self.REJECTION_STATUSES:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            return VerificationResult(
                success=False,
                error_message=_error_message(payload, "Invalid login credentials"),
            )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("credential_backend_parse_error", url=self.url, error=str(exc))
            raise
        if not isinstance(payload, dict):
            raise ValueError("credential backend returned a non-object body")
        session = payload.get("session")
        return VerificationResult(
            success=True,
            session=session if isinstance(session, dict) else None,
            user=_parse_user(payload.get("user")),
        )
