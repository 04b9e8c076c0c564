"""OAuth2 access tokens for Microsoft 365 / Outlook.com sending accounts.

Accounts with ``auth_type == "oauth2"`` authenticate to SMTP and IMAP with an
XOAUTH2 bearer token instead of a password. The master hands out the
refresh material (client id, refresh token, optional client secret and
tenant); this module trades it for a short-lived access token on the
Microsoft identity platform and caches the result per account.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from authlib.integrations.httpx_client import AsyncOAuth2Client

if TYPE_CHECKING:
    from emailloop.schemas import SmtpCredentials

logger = logging.getLogger(__name__)

TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
DEFAULT_TENANT = "common"
OAUTH2_SCOPE = (
    "https://outlook.office365.com/SMTP.Send "
    "https://outlook.office365.com/IMAP.AccessAsUser.All "
    "offline_access"
)

# Refresh this long before the reported expiry
EXPIRY_SKEW = timedelta(seconds=60)
DEFAULT_EXPIRES_IN = 3600


class OAuth2RefreshError(Exception):
    """Raised when an access token cannot be obtained."""

    pass


@dataclass(frozen=True, slots=True)
class CachedToken:
    """Access token with its (skewed) expiry."""

    access_token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


def token_url(tenant_id: str | None) -> str:
    """Token endpoint for a tenant, or the multi-tenant endpoint."""
    return TOKEN_URL_TEMPLATE.format(tenant=tenant_id or DEFAULT_TENANT)


def xoauth2_string(user: str, access_token: str) -> str:
    """SASL XOAUTH2 initial response for SMTP AUTH and IMAP AUTHENTICATE."""
    return f"user={user}\x01auth=Bearer {access_token}\x01\x01"


class OAuth2TokenProvider:
    """Hands out access tokens, refreshing them when missing or expired.

    A token delivered by the master with the credentials is used as long as
    its expiry is in the future. Refreshed tokens are cached per account id.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cache: dict[int, CachedToken] = {}

    def clear(self) -> None:
        self._cache.clear()

    async def get_access_token(self, smtp: SmtpCredentials) -> str:
        """Return a usable access token for ``smtp``.

        Raises:
            OAuth2RefreshError: If a refresh is needed and fails.
        """
        now = self._clock()

        if smtp.access_token and smtp.token_expires_at:
            expires_at = smtp.token_expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            if now < expires_at:
                return smtp.access_token

        cached = self._cache.get(smtp.id)
        if cached is not None and cached.is_valid(now):
            return cached.access_token

        token = await self._refresh(smtp)
        self._cache[smtp.id] = token
        return token.access_token

    async def _refresh(self, smtp: SmtpCredentials) -> CachedToken:
        if not smtp.client_id or not smtp.refresh_token:
            msg = "missing client id or refresh token"
            raise OAuth2RefreshError(msg)

        url = token_url(smtp.tenant_id)
        data = {
            "client_id": smtp.client_id,
            "refresh_token": smtp.refresh_token,
            "grant_type": "refresh_token",
            "scope": OAUTH2_SCOPE,
        }
        if smtp.client_secret:
            data["client_secret"] = smtp.client_secret

        async with AsyncOAuth2Client(
            client_id=smtp.client_id,
            client_secret=smtp.client_secret,
        ) as client:
            try:
                response = await client.post(url, data=data)
                response.raise_for_status()
                token_data = response.json()
            except Exception as e:
                logger.error("OAuth2 token refresh failed for %s: %s", smtp.email, e)
                raise OAuth2RefreshError(str(e)) from e

        if "error" in token_data:
            detail = token_data.get("error_description", token_data["error"])
            raise OAuth2RefreshError(f"token endpoint error: {detail}")

        access_token = token_data.get("access_token")
        if not access_token:
            raise OAuth2RefreshError("token endpoint returned no access token")

        expires_in = int(token_data.get("expires_in", DEFAULT_EXPIRES_IN))
        expires_at = self._clock() + timedelta(seconds=expires_in) - EXPIRY_SKEW
        logger.info("Refreshed OAuth2 token for %s", smtp.email)
        return CachedToken(access_token=access_token, expires_at=expires_at)
