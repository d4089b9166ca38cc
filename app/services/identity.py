"""
Identity verification against the external identity provider (Supabase Auth).

Bearer tokens are opaque to this service: the provider resolves them to a
stable external id and email.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import ConfigurationError, TransientError
from app.models.domain import VerifiedIdentity

logger = get_logger(__name__)


class IdentityVerifier(Protocol):
    """Resolves an opaque bearer token to a verified identity."""

    async def verify(self, token: str) -> VerifiedIdentity | None:
        """Return the identity, or None when the token is not valid."""
        ...


class SupabaseIdentityVerifier:
    """Identity verifier backed by the Supabase Auth user endpoint."""

    USER_PATH = "/auth/v1/user"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def verify(self, token: str) -> VerifiedIdentity | None:
        """Resolve a bearer token via GET {base_url}/auth/v1/user."""
        if not self.base_url:
            logger.error("identity_provider_not_configured")
            raise ConfigurationError("IDENTITY_PROVIDER_URL")
        if not token:
            return None

        try:
            response = await self.http_client.get(
                f"{self.base_url}{self.USER_PATH}",
                headers={"Authorization": f"Bearer {token}", "apikey": self.api_key},
            )
        except httpx.TimeoutException as e:
            logger.error("identity_provider_timeout", timeout=self.timeout_seconds)
            raise TransientError("identity.verify", "timed out") from e
        except httpx.HTTPError as e:
            logger.error("identity_provider_unreachable", error=str(e))
            raise TransientError("identity.verify", str(e)) from e

        if response.status_code in (401, 403):
            logger.info("identity_token_rejected", status=response.status_code)
            return None
        if response.status_code >= 500:
            logger.error("identity_provider_error", status=response.status_code)
            raise TransientError("identity.verify", f"provider returned {response.status_code}")
        if response.status_code != 200:
            logger.warning("identity_unexpected_status", status=response.status_code)
            return None

        payload = response.json()
        external_id = payload.get("id")
        if not external_id:
            logger.warning("identity_response_missing_id")
            return None
        return VerifiedIdentity(external_id=external_id, email=payload.get("email"))


_verifier: SupabaseIdentityVerifier | None = None


def get_identity_verifier() -> IdentityVerifier:
    """FastAPI dependency: process-wide verifier (shares one HTTP connection pool)."""
    global _verifier
    if _verifier is None:
        _verifier = SupabaseIdentityVerifier(
            base_url=settings.identity_provider_url,
            api_key=settings.identity_provider_api_key,
            timeout_seconds=settings.identity_timeout_seconds,
        )
    return _verifier
