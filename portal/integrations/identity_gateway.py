"""
Identity Provider Gateway — organization metadata sync.

All outbound HTTP calls to the identity provider go through this class.
Direct `requests` calls in services or blueprints are FORBIDDEN.

The identity provider embeds each organization's public metadata
(certification tier, compliance score, insurance validity) into session
claims, so downstream sites can gate features without calling back here.

  - Bearer token from config (IDENTITY_SYNC_TOKEN)
  - Retry: max 2 retries, backoff 1 s → 4 s
  - Timeout: 10 s (IDENTITY_SYNC_TIMEOUT)
  - Structured SyncResult returned; the gateway never raises for HTTP or
    network failures

Testability: pass a mock `session` (and ``backoff_seconds=[0, 0]``) to
IdentityGateway() in tests instead of letting it create a real
requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]

_DEFAULT_TIMEOUT = 10


class SyncResult:
    """Structured return value from IdentityGateway calls.

    Attributes:
        ok:           True if the call succeeded (HTTP 2xx + no exception).
        status_code:  HTTP status code (None if network-level failure).
        error:        Human-readable error message or None.
        duration_ms:  Round-trip latency of the last attempt in milliseconds.
        attempts:     Number of HTTP attempts made.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        error: str | None,
        duration_ms: int,
        attempts: int = 1,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms
        self.attempts = attempts

    def __repr__(self):
        return f"<SyncResult ok={self.ok} status={self.status_code} attempts={self.attempts}>"


class IdentityGateway:
    """Identity provider organization-metadata gateway.

    Usage:
        gateway = IdentityGateway.from_config()
        result = gateway.sync_organization_metadata("org_2abc", {
            "certification_tier": "CERTIFIED",
            "compliance_score": 84,
            "insurance_valid": True,
        })
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        backoff_seconds: list[int] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: requests.Session | None = session
        self._backoff = backoff_seconds if backoff_seconds is not None else _RETRY_BACKOFF_SECONDS

    @classmethod
    def from_config(cls, session: requests.Session | None = None) -> "IdentityGateway":
        """Build a gateway from the current app's IDENTITY_SYNC_* settings."""
        cfg: Any = current_app.config if has_app_context() else {}
        return cls(
            cfg.get("IDENTITY_SYNC_URL") or "",
            cfg.get("IDENTITY_SYNC_TOKEN"),
            timeout=cfg.get("IDENTITY_SYNC_TIMEOUT", _DEFAULT_TIMEOUT),
            session=session,
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    # ── Operations ───────────────────────────────────────────────────────────

    def sync_organization_metadata(self, identity_org_ref: str, metadata: dict) -> SyncResult:
        """Replace the organization's public metadata at the identity provider.

        Retries non-2xx responses and network errors up to _RETRY_MAX times.

        Returns:
            SyncResult — always returns (never raises). Callers check .ok.
        """
        if not self.configured:
            return SyncResult(ok=False, status_code=None, error="Identity sync URL not configured", duration_ms=0, attempts=0)

        url = f"{self.base_url}/{identity_org_ref}/metadata"
        body = {"public_metadata": metadata}
        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(_RETRY_MAX + 1):
            t0 = time.perf_counter()
            try:
                resp = self.session.request(
                    "PATCH", url, json=body, headers=self._headers(), timeout=self.timeout,
                )
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    return SyncResult(
                        ok=True,
                        status_code=resp.status_code,
                        error=None,
                        duration_ms=duration_ms,
                        attempts=attempt + 1,
                    )

                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
                logger.warning(
                    "Identity sync failed attempt=%d/%d status=%d org_ref=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, identity_org_ref,
                )

            except requests.Timeout:
                duration_ms = int(self.timeout * 1000)
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "Identity sync timed out attempt=%d/%d org_ref=%s",
                    attempt + 1, _RETRY_MAX + 1, identity_org_ref,
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                logger.warning(
                    "Identity sync network error attempt=%d/%d org_ref=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, identity_org_ref, last_error,
                )

            if attempt < _RETRY_MAX:
                sleep_s = self._backoff[min(attempt, len(self._backoff) - 1)] if self._backoff else 0
                if sleep_s:
                    time.sleep(sleep_s)

        return SyncResult(
            ok=False,
            status_code=last_status,
            error=last_error,
            duration_ms=duration_ms,
            attempts=_RETRY_MAX + 1,
        )
