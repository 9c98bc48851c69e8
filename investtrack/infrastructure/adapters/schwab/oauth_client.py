"""
Schwab OAuth token endpoint client.

POST {api_base}/v1/oauth/token with HTTP Basic auth
(base64(app_key:app_secret)) and a form-encoded body:

- grant_type=refresh_token       -> rotate the token pair
- grant_type=authorization_code  -> first exchange after the consent redirect

requests is blocking; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests

from config.models import SchwabConfig
from ....domain.errors import ReauthenticationRequiredError, TokenRefreshError
from ....models.credential import TokenPair
from ....utils.logging_setup import get_logger

logger = get_logger(__name__)

TERMINAL_ERROR_CODES = {"refresh_token_authentication_error", "unsupported_token_type"}


def is_terminal_token_error(body: Optional[Dict[str, Any]]) -> bool:
    """True when the provider rejected the refresh token itself."""
    if not isinstance(body, dict):
        return False
    if body.get("error") in TERMINAL_ERROR_CODES:
        return True
    description = body.get("error_description") or ""
    return "refresh token" in str(description).lower()


def _json_or_none(response: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class SchwabOAuthClient:
    """Token exchanges against the Schwab OAuth endpoint."""

    def __init__(self, config: Optional[SchwabConfig] = None, session: Optional[requests.Session] = None):
        self._config = config or SchwabConfig()
        self._session = session or requests.Session()

    @property
    def token_url(self) -> str:
        return f"{self._config.api_base.rstrip('/')}/v1/oauth/token"

    async def refresh(self, app_key: str, app_secret: str, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            ReauthenticationRequiredError: The refresh token was rejected.
            TokenRefreshError: Network failure or any other HTTP error.
        """
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await asyncio.to_thread(self._post_token, app_key, app_secret, form)

    async def exchange_code(
        self,
        app_key: str,
        app_secret: str,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenPair:
        """Exchange an authorization code (optionally with a PKCE verifier)."""
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await asyncio.to_thread(self._post_token, app_key, app_secret, form)

    def _post_token(self, app_key: str, app_secret: str, form: Dict[str, str]) -> TokenPair:
        grant = form["grant_type"]
        try:
            response = self._session.post(
                self.token_url,
                data=form,
                auth=(app_key, app_secret),
                headers={"Accept": "application/json"},
                timeout=self._config.request_timeout_sec,
            )
        except requests.exceptions.Timeout:
            raise TokenRefreshError(
                f"Token endpoint timed out after {self._config.request_timeout_sec}s ({grant})"
            ) from None
        except requests.exceptions.RequestException as e:
            raise TokenRefreshError(f"Token endpoint unreachable ({grant}): {e}") from e

        body = _json_or_none(response)
        if response.status_code >= 400:
            logger.error(f"Token endpoint returned {response.status_code} for {grant}: {body}")
            if is_terminal_token_error(body):
                error = body.get("error_description") or body.get("error")
                raise ReauthenticationRequiredError(f"Refresh token rejected: {error}")
            raise TokenRefreshError(f"Token endpoint returned HTTP {response.status_code}")

        if not body or not body.get("access_token"):
            raise TokenRefreshError(f"Token endpoint returned no access token ({grant})")

        logger.info(f"Token endpoint {grant} succeeded (expires_in={body.get('expires_in')})")
        return TokenPair(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=int(body.get("expires_in") or 1800),
        )
