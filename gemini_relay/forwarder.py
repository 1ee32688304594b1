"""
Key-fallback forwarding to the Gemini generateContent endpoint.

Credentials are tried strictly in order, one upstream call at a time. The
first 2xx response wins; otherwise the last failure is reported.
"""

from typing import Any, Dict, Optional, Sequence

import httpx
from loguru import logger

from gemini_relay.config import Constants, RelaySettings


# ===========================
# Errors
# ===========================

class RelayError(Exception):
    """Base error for the relay."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(RelayError):
    """No usable credentials are configured."""


class AttemptFailure(RelayError):
    """A single credential attempt failed."""

    def __init__(self, message: str, position: int):
        self.position = position
        super().__init__(message)


class UpstreamRejected(AttemptFailure):
    """Upstream answered with a non-success status."""

    def __init__(self, status_code: int, text: str, position: int):
        self.status_code = status_code
        self.text = text
        super().__init__(f"Gemini API returned status {status_code}: {text}", position)


class TransportFailure(AttemptFailure):
    """Network, timeout or response parsing failure."""


class AllCredentialsExhausted(RelayError):
    """Every credential was tried and none succeeded."""

    def __init__(self, last_failure: AttemptFailure, attempts: int):
        self.last_failure = last_failure
        self.attempts = attempts
        super().__init__(f"All {attempts} Gemini API key(s) failed. Last error: {last_failure.message}")


# ===========================
# Utility Functions
# ===========================

def mask_secret(text: str, secret: str) -> str:
    """Replace every occurrence of a credential in text."""
    if not secret or not text:
        return text
    return text.replace(secret, "****")


def truncate(text: str, limit: int = Constants.ERROR_TEXT_MAX_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# ===========================
# Forwarder
# ===========================

class KeyFallbackForwarder:
    """Forwards a payload upstream, falling back through credentials in order."""

    def __init__(self, settings: RelaySettings, http_client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.http_client = http_client

    @property
    def credentials(self) -> Sequence[str]:
        return self.settings.credentials

    async def forward(self, payload: Any, request_id: str = "-") -> Any:
        """Send payload upstream and return the first successful response body.

        Raises ConfigurationError when no credentials exist and
        AllCredentialsExhausted when every credential fails.
        """
        if not self.credentials:
            logger.error(f"[{request_id}] No Gemini API keys configured.")
            raise ConfigurationError("Gemini API key not configured on the server environment.")

        total = len(self.credentials)
        last_failure: Optional[AttemptFailure] = None

        for position, credential in enumerate(self.credentials, start=1):
            try:
                body = await self._attempt(payload, credential, position)
            except AttemptFailure as failure:
                logger.warning(f"[{request_id}] Gemini attempt with credential {position}/{total} failed: {failure.message}")
                last_failure = failure
                continue

            logger.info(f"[{request_id}] Gemini call succeeded with credential {position}/{total}.")
            return body

        logger.error(f"[{request_id}] All {total} Gemini API key(s) failed.")
        raise AllCredentialsExhausted(last_failure, total)

    async def _attempt(self, payload: Any, credential: str, position: int) -> Any:
        """Make one upstream call; raise AttemptFailure on any failure."""
        timeout = self.settings.request_timeout
        try:
            response = await self.http_client.post(
                self.settings.endpoint,
                params={"key": credential},
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise TransportFailure(
                f"Request timed out after {timeout:g}s ({type(e).__name__})", position
            )
        except httpx.RequestError as e:
            reason = mask_secret(str(e), credential) or type(e).__name__
            raise TransportFailure(f"Network error: {reason}", position)

        if not response.is_success:
            text = truncate(mask_secret(response.text, credential))
            raise UpstreamRejected(response.status_code, text, position)

        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure(f"Upstream returned invalid JSON: {e}", position)


def error_body(error: RelayError) -> Dict[str, Any]:
    """Caller-facing JSON body for a relay failure."""
    if isinstance(error, ConfigurationError):
        return {"error": f"Server Error: {error.message}"}

    if isinstance(error, AllCredentialsExhausted):
        body: Dict[str, Any] = {
            "error": f"All {error.attempts} Gemini API key(s) failed.",
            "details": error.last_failure.message,
        }
        if isinstance(error.last_failure, UpstreamRejected):
            body["upstream_status"] = error.last_failure.status_code
        return body

    return {"error": error.message}
