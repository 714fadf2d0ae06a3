"""GitHub OAuth helper used to prove an external identity for trial linkage."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from core.env import env_float, env_str
from services.trial_errors import OAuthNotConfiguredError, TransientUpstreamError
from services.trial_metrics import record_identity_exchange
from services.trial_service import ExternalIdentity

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_OAUTH_BASE_URL = "https://github.com"
DEFAULT_GITHUB_API_BASE_URL = "https://api.github.com"
GITHUB_OAUTH_SCOPE = "read:user user:email"


class GithubIdentityError(RuntimeError):
    """Raised when GitHub rejects the exchange or returns an unusable payload."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _pick_email(entries: Any) -> Optional[str]:
    if not isinstance(entries, list) or not entries:
        return None
    emails: List[Dict[str, Any]] = [entry for entry in entries if isinstance(entry, dict) and entry.get("email")]
    if not emails:
        return None
    primary = next((entry for entry in emails if entry.get("primary")), None)
    return (primary or emails[0]).get("email")


@dataclass(slots=True)
class GithubIdentityClient:
    """Exchanges an OAuth ``code`` for the GitHub user behind it."""

    client_id: str
    client_secret: str
    oauth_base_url: str = DEFAULT_GITHUB_OAUTH_BASE_URL
    api_base_url: str = DEFAULT_GITHUB_API_BASE_URL
    redirect_uri: Optional[str] = None
    timeout: float = 10.0
    connect_timeout: float = 5.0
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
            transport=self.transport,
        )

    def build_authorize_url(self, state: str) -> str:
        params: Dict[str, Any] = {
            "client_id": self.client_id,
            "scope": GITHUB_OAUTH_SCOPE,
            "state": state,
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        return f"{self.oauth_base_url.rstrip('/')}/login/oauth/authorize?{urlencode(params)}"

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        payload: Dict[str, Any] = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if self.redirect_uri:
            payload["redirect_uri"] = self.redirect_uri
        response = await client.post(
            f"{self.oauth_base_url.rstrip('/')}/login/oauth/access_token",
            json=payload,
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise GithubIdentityError("GitHub token response is not an object.", status_code=response.status_code)
        if data.get("error"):
            raise GithubIdentityError(
                str(data.get("error_description") or data.get("error")),
                status_code=response.status_code,
            )
        access_token = data.get("access_token")
        if not access_token:
            raise GithubIdentityError("GitHub token response has no access_token.", status_code=response.status_code)
        return str(access_token)

    async def fetch_identity(self, client: httpx.AsyncClient, access_token: str) -> ExternalIdentity:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        base = self.api_base_url.rstrip("/")
        response = await client.get(f"{base}/user", headers=headers)
        response.raise_for_status()
        profile = response.json()
        if not isinstance(profile, dict) or profile.get("id") is None:
            raise GithubIdentityError("GitHub user payload is missing an id.", status_code=response.status_code)

        email = profile.get("email")
        if not email:
            try:
                emails_response = await client.get(f"{base}/user/emails", headers=headers)
                emails_response.raise_for_status()
                email = _pick_email(emails_response.json())
            except (httpx.HTTPError, ValueError) as exc:
                logger.info("GitHub email lookup failed for user id=%s: %s", profile.get("id"), exc)
                email = None

        return ExternalIdentity(
            external_id=str(profile["id"]),
            username=profile.get("login"),
            email=email,
        )

    async def resolve_identity(self, code: str) -> ExternalIdentity:
        """Run the full exchange; any upstream failure surfaces as :class:`TransientUpstreamError`."""
        started = time.perf_counter()
        try:
            async with self._client() as client:
                access_token = await self.exchange_code(client, code)
                identity = await self.fetch_identity(client, access_token)
        except httpx.HTTPError as exc:
            record_identity_exchange("http_error", time.perf_counter() - started)
            logger.warning("GitHub identity exchange failed: %s", exc)
            raise TransientUpstreamError() from exc
        except (GithubIdentityError, ValueError) as exc:
            record_identity_exchange("invalid_response", time.perf_counter() - started)
            logger.warning("GitHub identity exchange returned an unusable payload: %s", exc)
            raise TransientUpstreamError() from exc
        record_identity_exchange("success", time.perf_counter() - started)
        logger.info("Resolved GitHub identity login=%s.", identity.username)
        return identity


def get_github_identity_client() -> GithubIdentityClient:
    client_id = env_str("GITHUB_CLIENT_ID")
    client_secret = env_str("GITHUB_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise OAuthNotConfiguredError()
    return GithubIdentityClient(
        client_id=client_id,
        client_secret=client_secret,
        oauth_base_url=env_str("GITHUB_OAUTH_BASE_URL", DEFAULT_GITHUB_OAUTH_BASE_URL) or DEFAULT_GITHUB_OAUTH_BASE_URL,
        api_base_url=env_str("GITHUB_API_BASE_URL", DEFAULT_GITHUB_API_BASE_URL) or DEFAULT_GITHUB_API_BASE_URL,
        redirect_uri=env_str("GITHUB_OAUTH_REDIRECT_URI"),
        timeout=env_float("GITHUB_HTTP_TIMEOUT_SECONDS", 10.0, minimum=1.0),
        connect_timeout=env_float("GITHUB_HTTP_CONNECT_TIMEOUT_SECONDS", 5.0, minimum=0.5),
    )


__all__ = [
    "GITHUB_OAUTH_SCOPE",
    "GithubIdentityClient",
    "GithubIdentityError",
    "get_github_identity_client",
]
