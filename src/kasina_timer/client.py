"""HTTP client for the session-storage endpoint.

POST {api_url}/api/sessions with a SessionWritePayload. The backend is
expected to treat ``sessionKey`` as an idempotency token.
"""

from __future__ import annotations

import logging

import requests

from .errors import PersistPermanentError, PersistTransientError
from .models import SessionWritePayload

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/api/sessions"

# 409: the backend already holds a record for this idempotency key
ACCEPTED_STATUSES = {200, 201, 409}
RETRYABLE_STATUSES = {408, 425, 429}


class SessionStorageClient:
    def __init__(
        self,
        api_url: str,
        api_token: str | None = None,
        http: requests.Session | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.http = http or requests.Session()

    @property
    def sessions_url(self) -> str:
        return f"{self.api_url}{SESSIONS_PATH}"

    def _headers(self, payload: SessionWritePayload) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": payload.session_key,
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def write(self, payload: SessionWritePayload, timeout: float) -> dict:
        """Send one write. Returns the response body on success.

        Raises:
            PersistTransientError: timeout, connection failure, 5xx, 429
            PersistPermanentError: any other rejection
        """
        try:
            response = self.http.post(
                self.sessions_url,
                json=payload.to_wire(),
                headers=self._headers(payload),
                timeout=timeout,
            )
        except requests.exceptions.Timeout as e:
            raise PersistTransientError(f"timeout after {timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise PersistTransientError(f"connection failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PersistPermanentError(f"request not sent: {e}") from e

        status = response.status_code
        if status in ACCEPTED_STATUSES:
            if status == 409:
                logger.info(f"Backend already has session {payload.session_key}")
            try:
                return response.json()
            except ValueError:
                return {}

        detail = response.text[:200] if response.text else ""
        if status >= 500 or status in RETRYABLE_STATUSES:
            raise PersistTransientError(f"server returned {status}: {detail}", status_code=status)
        raise PersistPermanentError(f"server rejected session ({status}): {detail}", status_code=status)
