"""Async HTTP client for the billing API, used by the confirmation poller."""

import logging
from typing import Any, Dict, Optional

import httpx

from app.services.retry import ALREADY_APPLIED, APPLIED, RETRIABLE, TERMINAL, Outcome

logger = logging.getLogger(__name__)


class PortalClientError(RuntimeError):
    """Raised when the billing API returns an error response."""

    def __init__(self, status_code: int, message: str, *, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def transient(self) -> bool:
        """Worth retrying: transport failure (status 0), 429 or a 5xx."""
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


class PortalClient:
    """Session-cookie client for the billing API.

    Reuses one httpx.AsyncClient for its lifetime; use as an async
    context manager or call aclose().
    """

    def __init__(self, base_url: str, *, cookies=None, transport=None, timeout: float = 10.0) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            cookies=cookies,
            transport=transport,
            timeout=timeout,
        )
        self._csrf_token: Optional[str] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        headers = {}
        if method != "GET" and self._csrf_token:
            headers["X-CSRFToken"] = self._csrf_token
        try:
            return await self._client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Billing API {method} {path} failed: {e}")
            raise PortalClientError(0, str(e)) from e

    async def _json(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._request(method, path, json=json)
        try:
            payload = response.json()
        except ValueError:
            payload = {"body": response.text}
        if response.status_code >= 400:
            message = payload.get("error") or f"HTTP {response.status_code}"
            logger.warning(f"Billing API error {response.status_code} on {path}: {payload}")
            raise PortalClientError(response.status_code, message, payload=payload)
        return payload

    # ──────────────────────────────────────────────
    # Endpoints
    # ──────────────────────────────────────────────

    async def session(self) -> Dict[str, Any]:
        payload = await self._json("GET", "/auth/session")
        if payload.get("csrf_token"):
            self._csrf_token = payload["csrf_token"]
        return payload

    async def payment_status(self, reference: Dict[str, str]) -> Dict[str, Any]:
        return await self._json("POST", "/api/payments/status", json=reference)

    async def entitlements(self) -> Dict[str, Any]:
        return await self._json("GET", "/api/entitlements")

    async def course_access(self, course_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/api/entitlements/courses/{course_id}")

    async def activate(self, reference: Dict[str, str]) -> Outcome:
        """Manual activation. HTTP status is mapped back onto an Outcome."""
        response = await self._request("POST", "/api/payments/activate", json=reference)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        reason = payload.get("reason")

        if response.status_code == 200:
            status = payload.get("status")
            if status not in (APPLIED, ALREADY_APPLIED):
                status = APPLIED
            return Outcome(status, reason=reason, data=payload.get("data") or {})
        if response.status_code in (409, 429) or response.status_code >= 502:
            return Outcome(RETRIABLE, reason=reason or f"http_{response.status_code}")
        return Outcome(TERMINAL, reason=reason or f"http_{response.status_code}")
