"""Refresh-token grants against the Google and Microsoft identity platforms."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import httpx
from pydantic import ValidationError

from app.core.config import get_settings
from app.integrations.email.schemas import ProviderType, TokenGrant

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
ERROR_BODY_LIMIT = 500


class OAuthRefreshError(Exception):
    """The provider rejected the refresh grant or could not be reached."""


class OAuthNotConfiguredError(Exception):
    pass


class OAuthTokenClient:
    def __init__(self, http: httpx.Client) -> None:
        self.http = http
        self.settings = get_settings()

    def token_url(self, provider: ProviderType) -> str:
        if provider == "google":
            return GOOGLE_TOKEN_URL
        return MICROSOFT_TOKEN_URL.format(tenant=self.settings.microsoft_tenant)

    def credentials(self, provider: ProviderType) -> tuple[str, str]:
        if provider == "google":
            client_id, client_secret = self.settings.google_client_id, self.settings.google_client_secret
        else:
            client_id, client_secret = self.settings.microsoft_client_id, self.settings.microsoft_client_secret
        if not client_id or not client_secret:
            raise OAuthNotConfiguredError(f"{provider} OAuth client credentials are not configured")
        return client_id, client_secret

    def refresh(self, provider: ProviderType, refresh_token: str) -> TokenGrant:
        client_id, client_secret = self.credentials(provider)
        try:
            response = self.http.post(
                self.token_url(provider),
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthRefreshError(f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise OAuthRefreshError(f"HTTP {response.status_code}: {response.text[:ERROR_BODY_LIMIT]}")
        try:
            return TokenGrant.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise OAuthRefreshError("token response is missing access_token") from exc


def build_oauth_http_client() -> httpx.Client:
    return httpx.Client(timeout=get_settings().oauth_timeout_seconds)


def get_oauth_http_client() -> Iterator[httpx.Client]:
    with build_oauth_http_client() as client:
        yield client
